"""Tests for the ingestion orchestration service."""

import json
import sqlite3
from datetime import datetime
from decimal import Decimal
from unittest.mock import MagicMock, patch

import httpx
import pytest

from push_ledger.errors import (
    ErrorKind,
    IngestConflictError,
    InputValidationError,
    InvoiceTransitionError,
    TransactionNotFoundError,
)
from push_ledger.extraction import ExtractionService
from push_ledger.schemas.dedupe import generate_notification_id
from push_ledger.schemas.records import (
    EditedBy,
    ExtractionResult,
    InvoiceStatus,
    TransactionType,
    UserProfile,
)
from push_ledger.services import IngestionService, IngestResult

FIXED_NOW = datetime(2025, 4, 15, 12, 0, 0)

STARBUCKS = {
    "timestamp": "2025-04-01T08:30:00Z",
    "title": "Card payment",
    "body": "Card payment. You paid 35.05 to Starbucks",
}


def expense(name="Starbucks", amount="35.05"):
    return ExtractionResult(amount=Decimal(amount), name=name, type=TransactionType.EXPENSE)


def invoice(status=InvoiceStatus.UNCONFIRMED, due=datetime(2025, 4, 10)):
    return ExtractionResult(
        amount=Decimal("89.90"),
        name="Stadtwerke",
        type=TransactionType.INVOICE,
        due_date=due,
        invoice_status=status,
    )


@pytest.fixture
def service(store, mock_extractor, config) -> IngestionService:
    """Ingestion service with a fixed clock and a mocked extractor."""
    return IngestionService(store, mock_extractor, config, clock=lambda: FIXED_NOW)


class TestIngest:
    """Tests for notification batch ingestion."""

    def test_extracted_expense(self, service, mock_extractor):
        """Test a complete extraction becomes an AUTO transaction."""
        mock_extractor.extract_transactions.return_value = [expense()]

        result = service.ingest(1, [dict(STARBUCKS)])

        assert isinstance(result, IngestResult)
        txn = result.transactions[0]
        assert txn.type == TransactionType.EXPENSE
        assert txn.amount == Decimal("35.05")
        assert txn.name == "Starbucks"
        assert txn.edited_by == EditedBy.AUTO
        assert txn.invoice_status is None
        assert result.errors == []
        assert result.extraction_available is True

    def test_same_notification_twice(self, service, mock_extractor, store):
        """Test re-ingestion returns the same transaction and stores one notification."""
        mock_extractor.extract_transactions.return_value = [expense()]

        first = service.ingest(1, [dict(STARBUCKS)])
        second = service.ingest(1, [dict(STARBUCKS)])

        assert second.transactions[0].id == first.transactions[0].id
        assert len(first.notifications_stored) == 1
        assert second.notifications_stored == []
        assert second.duplicates == first.notifications_stored
        assert len(store.list_notifications(1)) == 1
        assert len(store.list_transactions(1)) == 1

    def test_extraction_unavailable_gives_placeholder(self, service, mock_extractor):
        """Test a failed extraction stores a placeholder instead of dropping the notification."""
        mock_extractor.extract_transactions.return_value = None

        result = service.ingest(1, [dict(STARBUCKS)])

        txn = result.transactions[0]
        assert txn.amount == Decimal("0.00")
        assert txn.name == "undefined"
        assert txn.type is None
        assert txn.edited_by == EditedBy.AUTO
        assert result.extraction_available is False
        assert result.placeholders == 1

    @patch("push_ledger.extraction.service.httpx.Client")
    def test_extraction_timeout_gives_placeholder(self, mock_client_class, store, config):
        """Test a timeout of the real extraction service ends in a placeholder."""
        mock_client = MagicMock()
        mock_client.stream.side_effect = httpx.ReadTimeout("timed out")
        mock_client_class.return_value = mock_client

        with ExtractionService(config) as extractor:
            result = IngestionService(store, extractor, config).ingest(1, [dict(STARBUCKS)])

        txn = result.transactions[0]
        assert (txn.amount, txn.name, txn.type, txn.edited_by) == (
            Decimal("0.00"),
            "undefined",
            None,
            EditedBy.AUTO,
        )

    @patch("push_ledger.extraction.service.httpx.Client")
    def test_oversized_amount_gives_placeholder(self, mock_client_class, store, config):
        """Test an amount beyond decimal precision degrades to a placeholder."""
        answer = '[{"amount": 1e30, "name": "X", "type": "EXPENSE"}]'
        response = MagicMock()
        response.raise_for_status.return_value = None
        response.iter_lines.return_value = [json.dumps({"response": answer, "done": True})]
        mock_client = MagicMock()
        mock_client.stream.return_value.__enter__.return_value = response
        mock_client_class.return_value = mock_client

        with ExtractionService(config) as extractor:
            result = IngestionService(store, extractor, config).ingest(1, [dict(STARBUCKS)])

        txn = result.transactions[0]
        assert (txn.amount, txn.name, txn.type) == (Decimal("0.00"), "undefined", None)
        assert store.get_transaction(txn.id) is not None

    def test_no_extractor_gives_placeholders(self, store, config, sample_notifications):
        result = IngestionService(store, None, config).ingest(1, sample_notifications)
        assert [t.type for t in result.transactions] == [None, None]

    def test_partial_extraction(self, service, mock_extractor, sample_notifications):
        """Test unusable records fall back individually."""
        mock_extractor.extract_transactions.return_value = [expense("BILLA", "12.40"), None]

        result = service.ingest(1, sample_notifications)

        assert result.transactions[0].name == "BILLA"
        assert result.transactions[1].name == "undefined"
        assert result.placeholders == 1

    def test_incomplete_invoice_gives_placeholder(
        self, service, mock_extractor, sample_invoice_notification
    ):
        """Test an invoice without due date is not promoted."""
        mock_extractor.extract_transactions.return_value = [invoice(due=None)]

        result = service.ingest(1, [sample_invoice_notification])
        assert result.transactions[0].type is None

    def test_extracted_invoice(self, service, mock_extractor, sample_invoice_notification):
        mock_extractor.extract_transactions.return_value = [invoice()]

        txn = service.ingest(1, [sample_invoice_notification]).transactions[0]

        assert txn.type == TransactionType.INVOICE
        assert txn.invoice_status == InvoiceStatus.UNCONFIRMED
        assert txn.due_date == datetime(2025, 4, 10)
        assert txn.pay_date is None

    def test_one_transaction_per_notification(
        self, service, mock_extractor, store, sample_notifications
    ):
        """Test every stored notification links to its own transaction."""
        mock_extractor.extract_transactions.return_value = [expense("A"), expense("B")]

        service.ingest(1, sample_notifications)

        notifications = store.list_notifications(1)
        linked = [n.transaction_id for n in notifications]
        assert len(notifications) == 2
        assert len(set(linked)) == 2
        assert all(store.get_transaction(t) is not None for t in linked)

    def test_retry_after_placeholder_keeps_row(self, service, mock_extractor, store):
        """Test a later successful extraction does not fork or overwrite the row."""
        mock_extractor.extract_transactions.return_value = None
        first = service.ingest(1, [dict(STARBUCKS)])

        mock_extractor.extract_transactions.return_value = [expense()]
        second = service.ingest(1, [dict(STARBUCKS)])

        assert second.transactions[0].id == first.transactions[0].id
        assert second.transactions[0].name == "undefined"
        assert len(store.list_transactions(1)) == 1

    def test_user_edit_survives_reingestion(self, service, mock_extractor):
        mock_extractor.extract_transactions.return_value = None
        txn_id = service.ingest(1, [dict(STARBUCKS)]).transactions[0].id
        service.update_transaction(txn_id, {"name": "Starbucks", "amount": "35.05",
                                            "type": "EXPENSE"})

        mock_extractor.extract_transactions.return_value = [expense("Other", "1.00")]
        again = service.ingest(1, [dict(STARBUCKS)]).transactions[0]

        assert again.name == "Starbucks"
        assert again.edited_by == EditedBy.USER

    def test_duplicate_within_batch(self, service, mock_extractor):
        mock_extractor.extract_transactions.return_value = [expense()]

        result = service.ingest(1, [dict(STARBUCKS), dict(STARBUCKS)])

        assert len(result.transactions) == 1
        assert len(result.duplicates) == 1
        assert len(mock_extractor.extract_transactions.call_args.args[0]) == 1

    def test_equal_instants_deduplicated(self, service, mock_extractor, store):
        """Test the same instant in another offset is the same notification."""
        mock_extractor.extract_transactions.return_value = [expense()]
        shifted = dict(STARBUCKS, timestamp="2025-04-01T10:30:00+02:00")

        service.ingest(1, [dict(STARBUCKS)])
        result = service.ingest(1, [shifted])

        assert result.duplicates == [
            generate_notification_id("2025-04-01T08:30:00Z", STARBUCKS["title"], STARBUCKS["body"])
        ]
        assert len(store.list_notifications(1)) == 1

    def test_users_are_isolated(self, service, mock_extractor, store):
        mock_extractor.extract_transactions.return_value = [expense()]

        a = service.ingest(1, [dict(STARBUCKS)]).transactions[0]
        b = service.ingest(2, [dict(STARBUCKS)]).transactions[0]

        assert a.id != b.id
        assert len(store.list_notifications(2)) == 1

    def test_missing_title_allowed(self, service, mock_extractor):
        mock_extractor.extract_transactions.return_value = [expense()]
        result = service.ingest(1, [{"timestamp": "2025-04-01", "body": "You paid 1 EUR"}])
        assert len(result.notifications_stored) == 1

    def test_context_passed_to_extractor(self, service, mock_extractor, store):
        """Test the latest transaction per type and profile hints reach the extractor."""
        store.upsert_user_profile(UserProfile(user_id=1, first_name="Anna", company_name="ACME"))
        mock_extractor.extract_transactions.return_value = [expense()]
        first = service.ingest(1, [dict(STARBUCKS)]).transactions[0]

        service.ingest(1, [dict(STARBUCKS, body="You paid 3.20 to Starbucks")])

        context = mock_extractor.extract_transactions.call_args.args[1]
        assert [t.id for t in context.recent_transactions] == [first.id]
        assert context.notification_for(first.id).body == STARBUCKS["body"]
        assert context.profile.company_name == "ACME"

    def test_all_transactions_rejected(self, service, mock_extractor, store):
        """Test a batch with no persisted transaction is a conflict."""
        mock_extractor.extract_transactions.return_value = [expense()]

        with patch.object(
            store, "insert_transaction", side_effect=sqlite3.IntegrityError("CHECK constraint failed")
        ):
            with pytest.raises(IngestConflictError) as exc:
                service.ingest(1, [dict(STARBUCKS)])

        assert exc.value.kind == ErrorKind.CONFLICT
        assert len(exc.value.errors) == 1
        assert store.list_notifications(1) == []


class TestIngestValidation:
    """Tests for input validation."""

    def test_empty_batch(self, service):
        with pytest.raises(InputValidationError) as exc:
            service.ingest(1, [])
        assert exc.value.kind == ErrorKind.PARAMETER_MISSING

    def test_batch_too_large(self, service):
        batch = [dict(STARBUCKS, body=f"You paid {i} EUR") for i in range(11)]
        with pytest.raises(InputValidationError, match="exceeds"):
            service.ingest(1, batch)

    def test_missing_body(self, service):
        with pytest.raises(InputValidationError) as exc:
            service.ingest(1, [{"timestamp": "2025-04-01T08:30:00Z", "title": "x"}])
        assert exc.value.kind == ErrorKind.PARAMETER_MISSING

    def test_missing_timestamp(self, service):
        with pytest.raises(InputValidationError):
            service.ingest(1, [{"title": "x", "body": "y"}])

    def test_invalid_timestamp(self, service):
        with pytest.raises(InputValidationError) as exc:
            service.ingest(1, [{"timestamp": "yesterday", "body": "y"}])
        assert exc.value.kind == ErrorKind.INVALID_PARAMETER

    def test_out_of_range_timestamp(self, service):
        with pytest.raises(InputValidationError) as exc:
            service.ingest(1, [dict(STARBUCKS, timestamp="0001-01-01T00:00:00+05:00")])
        assert exc.value.kind == ErrorKind.INVALID_PARAMETER

    def test_invalid_user_id(self, service):
        with pytest.raises(InputValidationError):
            service.ingest("1", [dict(STARBUCKS)])

    def test_nothing_stored_on_invalid_batch(self, service, store):
        """Test a single bad record rejects the whole batch up front."""
        with pytest.raises(InputValidationError):
            service.ingest(1, [dict(STARBUCKS), {"timestamp": "2025-04-01"}])
        assert store.list_transactions(1) == []


class TestInvoiceOperations:
    """Tests for invoice lifecycle operations through the service."""

    @pytest.fixture
    def invoice_id(self, service, mock_extractor, sample_invoice_notification) -> str:
        mock_extractor.extract_transactions.return_value = [invoice()]
        return service.ingest(1, [sample_invoice_notification]).transactions[0].id

    def test_manual_paid(self, service, invoice_id, store):
        """Test PAID stamps pay_date with the transition time and marks the user edit."""
        updated = service.transition_invoice_status(invoice_id, "PAID")
        stored = store.get_transaction(invoice_id)

        assert updated.invoice_status == InvoiceStatus.PAID
        assert stored.pay_date == FIXED_NOW
        assert stored.edited_by == EditedBy.USER

    def test_manual_cancel_then_unpaid(self, service, invoice_id):
        service.transition_invoice_status(invoice_id, "PAID")
        canceled = service.transition_invoice_status(invoice_id, "canceled")
        assert canceled.invoice_status == InvoiceStatus.CANCELED
        assert canceled.pay_date is None

    def test_expense_rejected_unchanged(self, service, mock_extractor, store):
        """Test invoice transitions on an EXPENSE are rejected and leave the row as is."""
        mock_extractor.extract_transactions.return_value = [expense()]
        txn_id = service.ingest(1, [dict(STARBUCKS)]).transactions[0].id
        before = store.get_transaction(txn_id)

        with pytest.raises(InvoiceTransitionError) as exc:
            service.transition_invoice_status(txn_id, "PAID")

        assert exc.value.kind == ErrorKind.INVALID_STATE
        after = store.get_transaction(txn_id)
        assert after.to_dict() == before.to_dict()
        assert after.updated_at == before.updated_at

    def test_invalid_target_rejected(self, service, invoice_id, store):
        with pytest.raises(InvoiceTransitionError):
            service.transition_invoice_status(invoice_id, "CONFIRMED")
        assert store.get_transaction(invoice_id).invoice_status == InvoiceStatus.UNCONFIRMED

    def test_unknown_transaction(self, service):
        with pytest.raises(TransactionNotFoundError) as exc:
            service.transition_invoice_status("missing", "PAID")
        assert exc.value.kind == ErrorKind.NOT_FOUND

    def test_apply_due_invoices(self, service, invoice_id, store):
        """Test the explicit trigger settles overdue invoices."""
        changed = service.apply_due_invoices()

        assert [t.id for t in changed] == [invoice_id]
        assert store.get_transaction(invoice_id).invoice_status == InvoiceStatus.UNPAID
        assert service.apply_due_invoices() == []

    def test_list_settles_on_read(self, service, mock_extractor, sample_invoice_notification):
        mock_extractor.extract_transactions.return_value = [invoice(InvoiceStatus.CONFIRMED)]
        service.ingest(1, [sample_invoice_notification])

        txn = service.list_transactions(1)[0]

        assert txn.invoice_status == InvoiceStatus.PAID
        assert txn.pay_date == FIXED_NOW

    def test_get_settles_on_read(self, service, invoice_id):
        assert service.get_transaction(invoice_id).invoice_status == InvoiceStatus.UNPAID

    def test_check_on_read_disabled(self, service, invoice_id, config):
        config.invoices.check_on_read = False
        assert service.get_transaction(invoice_id).invoice_status == InvoiceStatus.UNCONFIRMED
        assert service.list_transactions(1)[0].invoice_status == InvoiceStatus.UNCONFIRMED

    def test_not_due_yet(self, store, mock_extractor, config, sample_invoice_notification):
        mock_extractor.extract_transactions.return_value = [invoice()]
        early = IngestionService(store, mock_extractor, config, clock=lambda: datetime(2025, 4, 9))
        txn_id = early.ingest(1, [sample_invoice_notification]).transactions[0].id

        assert early.get_transaction(txn_id).invoice_status == InvoiceStatus.UNCONFIRMED


class TestTransactionMaintenance:
    """Tests for manual add, update, listing and delete."""

    def test_add_transaction(self, service):
        txn, created = service.add_transaction(
            1, "2025-04-05T10:00:00Z", "19,99", "Bookshop", type="expense"
        )

        assert created is True
        assert txn.amount == Decimal("19.99")
        assert txn.type == TransactionType.EXPENSE
        assert txn.edited_by == EditedBy.USER

    def test_add_transaction_idempotent(self, service):
        first, _ = service.add_transaction(1, "2025-04-05T10:00:00", "19.99", "Bookshop")
        second, created = service.add_transaction(1, "2025-04-05T10:00:00", "19.99", " bookshop")

        assert created is False
        assert second.id == first.id

    def test_add_invoice_defaults_unconfirmed(self, service):
        txn, _ = service.add_transaction(
            1, "2025-04-05", "50", "Landlord", type="INVOICE", due_date="2025-05-01"
        )
        assert txn.invoice_status == InvoiceStatus.UNCONFIRMED
        assert txn.due_date == datetime(2025, 5, 1)

    def test_add_invoice_must_start_in_initial_state(self, service):
        with pytest.raises(InvoiceTransitionError):
            service.add_transaction(
                1, "2025-04-05", "50", "Landlord", type="INVOICE", invoice_status="PAID"
            )

    @pytest.mark.parametrize(
        "kwargs", [{"due_date": "2025-05-01"}, {"invoice_status": "CONFIRMED"}]
    )
    def test_add_rejects_invoice_fields_on_expense(self, service, store, kwargs):
        with pytest.raises(InputValidationError, match="only to invoices"):
            service.add_transaction(1, "2025-04-05", "50", "Landlord", type="EXPENSE", **kwargs)
        assert store.list_transactions(1) == []

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"timestamp": "", "amount": "1", "name": "x"},
            {"timestamp": "2025-04-05", "amount": "abc", "name": "x"},
            {"timestamp": "2025-04-05", "amount": "1e30", "name": "x"},
            {"timestamp": "0001-01-01T00:00:00+05:00", "amount": "1", "name": "x"},
            {"timestamp": "2025-04-05", "amount": "1", "name": " "},
            {"timestamp": "2025-04-05", "amount": "1", "name": "x", "type": "GIFT"},
        ],
    )
    def test_add_rejects_bad_input(self, service, kwargs):
        with pytest.raises(InputValidationError):
            service.add_transaction(1, **kwargs)

    def test_update_placeholder(self, service, mock_extractor):
        """Test a user completing a placeholder."""
        txn_id = service.ingest(1, [dict(STARBUCKS)]).transactions[0].id

        updated = service.update_transaction(
            txn_id, {"amount": "35.05", "name": "Starbucks", "type": "expense"}
        )

        assert updated.type == TransactionType.EXPENSE
        assert updated.amount == Decimal("35.05")
        assert updated.edited_by == EditedBy.USER

    def test_update_invoice_to_expense_strips_fields(self, service):
        txn, _ = service.add_transaction(
            1, "2025-04-05", "50", "Landlord", type="INVOICE", due_date="2025-05-01"
        )

        updated = service.update_transaction(txn.id, {"type": "EXPENSE"})

        assert updated.invoice_status is None
        assert updated.due_date is None

    def test_update_rejects_due_date_on_expense(self, service, store):
        txn, _ = service.add_transaction(1, "2025-04-05", "50", "Landlord", type="EXPENSE")

        with pytest.raises(InputValidationError, match="only to invoices"):
            service.update_transaction(txn.id, {"due_date": "2025-05-01"})
        assert store.get_transaction(txn.id).due_date is None

    def test_update_rejects_oversized_amount(self, service, store):
        txn, _ = service.add_transaction(1, "2025-04-05", "50", "Landlord")

        with pytest.raises(InputValidationError):
            service.update_transaction(txn.id, {"amount": "1e30"})
        assert store.get_transaction(txn.id).amount == Decimal("50.00")

    def test_update_unknown_field(self, service):
        with pytest.raises(InputValidationError):
            service.update_transaction("whatever", {"invoice_status": "PAID"})

    def test_update_missing(self, service):
        with pytest.raises(TransactionNotFoundError):
            service.update_transaction("missing", {"name": "x"})

    def test_list_window_validation(self, service):
        with pytest.raises(InputValidationError):
            service.list_notifications(1, datetime(2025, 5, 1), datetime(2025, 4, 1))

    def test_list_notifications_window(self, service, mock_extractor, sample_notifications):
        service.ingest(1, sample_notifications)

        listed = service.list_notifications(
            1, datetime(2025, 4, 2, 0, 0, 0), datetime(2025, 4, 2, 23, 59, 59)
        )
        assert [n.title for n in listed] == ["Incoming transfer"]

    def test_get_missing(self, service):
        with pytest.raises(TransactionNotFoundError):
            service.get_transaction("missing")

    def test_delete_and_reingest(self, service, mock_extractor, store):
        """Test deleting removes the notification too, so it can be ingested again."""
        mock_extractor.extract_transactions.return_value = [expense()]
        txn_id = service.ingest(1, [dict(STARBUCKS)]).transactions[0].id

        assert service.delete_transaction(txn_id) is True
        assert service.delete_transaction(txn_id) is False
        assert store.list_notifications(1) == []

        result = service.ingest(1, [dict(STARBUCKS)])
        assert result.transactions[0].id == txn_id
        assert len(result.notifications_stored) == 1
