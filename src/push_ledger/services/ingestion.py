"""Notification ingestion orchestration service.

This service implements the end-to-end reconciliation of a notification
batch. It provides a deterministic, idempotent process that:
- Fingerprints every notification (dedup key)
- Builds extraction context from the latest transaction of each type
- Calls the extraction service once per batch
- Falls back to placeholder transactions so no notification is dropped
- Persists transactions first, then notifications linked to them
- Exposes the invoice lifecycle operations on stored transactions
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from push_ledger.errors import (
    ErrorKind,
    IngestConflictError,
    InputValidationError,
    InvoiceTransitionError,
    TransactionNotFoundError,
)
from push_ledger.extraction.parsing import promote_candidate
from push_ledger.schemas.dedupe import (
    generate_notification_id,
    generate_transaction_id,
    transaction_id_for_notification,
)
from push_ledger.schemas.invoice_lifecycle import (
    INITIAL_STATES,
    apply_due_transition,
    apply_manual_transition,
    parse_invoice_status,
    strip_invoice_fields,
    validate_transaction,
)
from push_ledger.schemas.records import (
    EditedBy,
    ExtractionContext,
    InvoiceStatus,
    Notification,
    Transaction,
    TransactionType,
    parse_timestamp,
    to_amount,
    utc_now,
)

if TYPE_CHECKING:
    from push_ledger.config import Config
    from push_ledger.extraction.service import ExtractionService
    from push_ledger.state_store import StateStore

logger = logging.getLogger(__name__)

# Fields a user may edit directly; invoice status goes through transitions
UPDATABLE_FIELDS = frozenset({"timestamp", "amount", "name", "type", "due_date"})


@dataclass
class IngestResult:
    """Result of ingesting one notification batch."""

    transactions: list[Transaction] = field(default_factory=list)
    notifications_stored: list[str] = field(default_factory=list)
    duplicates: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    extraction_available: bool = True

    @property
    def placeholders(self) -> int:
        """Number of transactions that fell back to a placeholder."""
        return sum(1 for t in self.transactions if t.type is None)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "transactions": [t.to_dict() for t in self.transactions],
            "notifications_stored": self.notifications_stored,
            "duplicates": self.duplicates,
            "errors": self.errors,
            "extraction_available": self.extraction_available,
        }


def _parse_type(value: Any) -> TransactionType | None:
    if value is None or isinstance(value, TransactionType):
        return value
    try:
        return TransactionType(str(value).strip().upper())
    except ValueError as e:
        raise InputValidationError(f"Unknown transaction type: {value!r}") from e


def _parse_datetime_field(name: str, value: Any) -> datetime | None:
    try:
        return parse_timestamp(value)
    except (TypeError, ValueError, OverflowError) as e:
        raise InputValidationError(f"{name}: invalid timestamp {value!r}") from e


class IngestionService:
    """Orchestrates notification ingestion and transaction maintenance.

    This service is safe to run repeatedly (idempotent):
    - Same notification content always maps to the same notification and
      transaction IDs
    - Re-submission never duplicates rows and never overwrites user edits
    - Extraction failures degrade to placeholders, never abort a batch

    Usage:
        service = IngestionService(state_store, extractor, config)
        result = service.ingest(user_id, [{"timestamp": ..., "title": ..., "body": ...}])
    """

    def __init__(
        self,
        state_store: StateStore,
        extractor: ExtractionService | None,
        config: Config,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the ingestion service.

        Args:
            state_store: State store for persistence and profile hints.
            extractor: Extraction service; None stores placeholders only.
            config: Application configuration.
            clock: Source of "now" (naive UTC); defaults to the system clock.
        """
        self.store = state_store
        self.extractor = extractor
        self.config = config
        self.clock = clock or utc_now

    # Ingestion

    def ingest(self, user_id: int, notifications: list[dict | Notification]) -> IngestResult:
        """Ingest a batch of raw notifications for a user.

        Args:
            user_id: Authenticated user identifier (trusted as given).
            notifications: Raw notifications with timestamp, title and body.

        Returns:
            IngestResult with persisted transactions and per-record errors.

        Raises:
            InputValidationError: If the batch or one of its records is malformed.
            IngestConflictError: If no transaction of the batch could be persisted.
        """
        result = IngestResult()
        batch = self._validate_batch(user_id, notifications, result)

        context = self.build_context(user_id)
        candidates = None
        if self.extractor is not None:
            candidates = self.extractor.extract_transactions(batch, context)
        if candidates is None:
            result.extraction_available = False
            logger.warning(
                "Extraction unavailable for user %d, storing %d placeholder(s)",
                user_id,
                len(batch),
            )

        placeholder_name = self.config.ingestion.placeholder_name
        resolved: list[tuple[Notification, Transaction]] = []

        # Phase 1: transactions
        for index, notification in enumerate(batch):
            candidate = candidates[index] if candidates else None
            txn = promote_candidate(
                notification, notification.transaction_id, candidate, placeholder_name
            )
            stored = self._persist_transaction(notification, txn, result)
            if stored is not None:
                resolved.append((notification, stored))

        if not resolved:
            logger.error("No transaction persisted for batch of %d (user %d)", len(batch), user_id)
            raise IngestConflictError("Adding transactions error", result.errors)

        # Phase 2: notifications, linked to the resolved transaction IDs
        for notification, txn in resolved:
            notification.transaction_id = txn.id
            try:
                stored_id = self.store.insert_notification(notification)
            except sqlite3.IntegrityError as e:
                result.errors.append(f"Notification {notification.id}: not stored ({e})")
                continue
            if stored_id:
                result.notifications_stored.append(stored_id)
            else:
                result.duplicates.append(notification.id)
            result.transactions.append(txn)

        logger.info(
            "Ingested batch for user %d: %d transaction(s), %d new notification(s), "
            "%d duplicate(s), %d placeholder(s), %d error(s)",
            user_id,
            len(result.transactions),
            len(result.notifications_stored),
            len(result.duplicates),
            result.placeholders,
            len(result.errors),
        )
        return result

    def _persist_transaction(
        self, notification: Notification, txn: Transaction, result: IngestResult
    ) -> Transaction | None:
        """Idempotently insert a transaction; reuse the stored row on conflict."""
        try:
            inserted = self.store.insert_transaction(txn)
        except sqlite3.IntegrityError as e:
            result.errors.append(f"Notification {notification.id}: transaction rejected ({e})")
            return None

        if inserted:
            return txn

        existing = self.store.get_transaction(txn.id)
        if existing is None:
            result.errors.append(
                f"Notification {notification.id}: transaction {txn.id} vanished during insert"
            )
        return existing

    def _validate_batch(
        self,
        user_id: int,
        notifications: list[dict | Notification],
        result: IngestResult,
    ) -> list[Notification]:
        """Validate raw input and assign fingerprints. Repeats within a batch are dropped."""
        if isinstance(user_id, bool) or not isinstance(user_id, int):
            raise InputValidationError(f"user_id must be an integer, got {user_id!r}")
        if not notifications:
            raise InputValidationError("Body is empty", ErrorKind.PARAMETER_MISSING)
        if not isinstance(notifications, list):
            raise InputValidationError("Notifications must be a list")
        max_size = self.config.ingestion.max_batch_size
        if len(notifications) > max_size:
            raise InputValidationError(
                f"Batch of {len(notifications)} exceeds maximum of {max_size} notifications"
            )

        batch: list[Notification] = []
        seen: set[str] = set()
        for index, raw in enumerate(notifications):
            notification = self._to_notification(user_id, index, raw)
            if notification.id in seen:
                result.duplicates.append(notification.id)
                continue
            seen.add(notification.id)
            batch.append(notification)
        return batch

    def _to_notification(self, user_id: int, index: int, raw: dict | Notification) -> Notification:
        if isinstance(raw, Notification):
            raw = {"timestamp": raw.timestamp, "title": raw.title, "body": raw.body}
        if not isinstance(raw, dict):
            raise InputValidationError(f"Notification {index}: expected an object")

        if raw.get("timestamp") in (None, ""):
            raise InputValidationError(
                f"Notification {index}: timestamp is missing", ErrorKind.PARAMETER_MISSING
            )
        timestamp = _parse_datetime_field(f"Notification {index}", raw["timestamp"])

        body = raw.get("body")
        if not isinstance(body, str) or not body.strip():
            raise InputValidationError(
                f"Notification {index}: body is missing", ErrorKind.PARAMETER_MISSING
            )
        title = raw.get("title") or ""
        if not isinstance(title, str):
            raise InputValidationError(f"Notification {index}: title must be a string")

        notification_id = generate_notification_id(timestamp, title, body)
        return Notification(
            id=notification_id,
            user_id=user_id,
            timestamp=timestamp,
            title=title,
            body=body,
            transaction_id=transaction_id_for_notification(user_id, notification_id),
        )

    def build_context(self, user_id: int) -> ExtractionContext:
        """Collect the latest transaction per type, their notifications and profile hints."""
        recent = self.store.get_latest_transactions_by_type(user_id)
        notifications = self.store.get_notifications_for_transactions(
            user_id, [t.id for t in recent]
        )
        return ExtractionContext(
            profile=self.store.get_user_profile(user_id),
            recent_transactions=recent,
            recent_notifications=notifications,
        )

    # Queries

    def list_notifications(
        self,
        user_id: int,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Notification]:
        """List a user's notifications, newest first, within an optional window."""
        if start is not None and end is not None and start > end:
            raise InputValidationError("start must not be after end")
        return self.store.list_notifications(user_id, start, end)

    def list_transactions(
        self,
        user_id: int,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Transaction]:
        """List a user's transactions, newest first, settling overdue invoices first."""
        if start is not None and end is not None and start > end:
            raise InputValidationError("start must not be after end")
        if self.config.invoices.check_on_read:
            self.store.apply_due_invoice_transitions(self.clock(), user_id=user_id)
        return self.store.list_transactions(user_id, start, end)

    def get_transaction(self, transaction_id: str) -> Transaction:
        """Get one transaction, settling it first if it is an overdue invoice."""
        txn = self.store.get_transaction(transaction_id)
        if txn is None:
            raise TransactionNotFoundError(transaction_id)

        if self.config.invoices.check_on_read:
            now = self.clock()
            if apply_due_transition(txn, now) is not None:
                txn = self.store.modify_transaction(
                    transaction_id, lambda t: apply_due_transition(t, now) or t
                ) or txn
        return txn

    # Mutations

    def add_transaction(
        self,
        user_id: int,
        timestamp: datetime | str,
        amount: Any,
        name: str,
        type: TransactionType | str | None = None,
        due_date: datetime | str | None = None,
        invoice_status: InvoiceStatus | str | None = None,
    ) -> tuple[Transaction, bool]:
        """Record a manually entered transaction.

        Returns:
            Tuple of (stored transaction, created). created is False when an
            identical entry already existed.
        """
        parsed_timestamp = _parse_datetime_field("timestamp", timestamp)
        if parsed_timestamp is None:
            raise InputValidationError("timestamp is missing", ErrorKind.PARAMETER_MISSING)
        if not name or not str(name).strip():
            raise InputValidationError("name is missing", ErrorKind.PARAMETER_MISSING)
        try:
            parsed_amount = to_amount(amount)
        except (ArithmeticError, ValueError) as e:
            raise InputValidationError(str(e)) from e

        txn_type = _parse_type(type)
        parsed_due_date = _parse_datetime_field("due_date", due_date)
        status = parse_invoice_status(invoice_status) if invoice_status else None
        if txn_type == TransactionType.INVOICE:
            status = status or InvoiceStatus.UNCONFIRMED
            if status not in INITIAL_STATES:
                raise InvoiceTransitionError(
                    f"New invoices start as CONFIRMED or UNCONFIRMED, got {status.value}"
                )
        elif parsed_due_date is not None or status is not None:
            raise InputValidationError("due_date and invoice_status apply only to invoices")

        txn = Transaction(
            id=generate_transaction_id(user_id, parsed_timestamp, name, parsed_amount),
            user_id=user_id,
            timestamp=parsed_timestamp,
            amount=parsed_amount,
            name=str(name).strip(),
            type=txn_type,
            edited_by=EditedBy.USER,
            due_date=parsed_due_date,
            invoice_status=status,
        )

        if self.store.insert_transaction(txn):
            logger.info("Added transaction %s for user %d", txn.id, user_id)
            return txn, True
        return self.store.get_transaction(txn.id) or txn, False

    def update_transaction(self, transaction_id: str, changes: dict[str, Any]) -> Transaction:
        """Apply a user edit. The record is marked edited_by USER.

        Raises:
            InputValidationError: Unknown field or malformed value.
            InvoiceTransitionError: Result would break invoice invariants.
            TransactionNotFoundError: Unknown transaction.
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise InputValidationError(f"Unknown fields for update: {sorted(unknown)}")

        values: dict[str, Any] = {}
        if "timestamp" in changes:
            values["timestamp"] = _parse_datetime_field("timestamp", changes["timestamp"])
            if values["timestamp"] is None:
                raise InputValidationError("timestamp must not be empty")
        if "amount" in changes:
            try:
                values["amount"] = to_amount(changes["amount"])
            except (ArithmeticError, ValueError) as e:
                raise InputValidationError(str(e)) from e
        if "name" in changes:
            if not changes["name"] or not str(changes["name"]).strip():
                raise InputValidationError("name must not be empty")
            values["name"] = str(changes["name"]).strip()
        if "type" in changes:
            values["type"] = _parse_type(changes["type"])
        if "due_date" in changes:
            values["due_date"] = _parse_datetime_field("due_date", changes["due_date"])

        def mutate(txn: Transaction) -> Transaction:
            for key, value in values.items():
                setattr(txn, key, value)
            if not txn.is_invoice and values.get("due_date") is not None:
                raise InputValidationError("due_date applies only to invoices")
            txn.edited_by = EditedBy.USER
            if txn.is_invoice and txn.invoice_status is None:
                txn.invoice_status = InvoiceStatus.UNCONFIRMED
            txn = strip_invoice_fields(txn)
            errors = validate_transaction(txn)
            if errors:
                raise InvoiceTransitionError("; ".join(errors))
            return txn

        updated = self.store.modify_transaction(transaction_id, mutate)
        if updated is None:
            raise TransactionNotFoundError(transaction_id)
        logger.info("Updated transaction %s (%s)", transaction_id, ", ".join(sorted(values)))
        return updated

    def transition_invoice_status(
        self, transaction_id: str, new_status: InvoiceStatus | str
    ) -> Transaction:
        """Manually move an invoice to CANCELED, PAID or UNPAID.

        Raises:
            InvoiceTransitionError: Not an invoice, or target not allowed.
            TransactionNotFoundError: Unknown transaction.
        """
        now = self.clock()

        def transition(txn: Transaction) -> Transaction:
            txn = apply_manual_transition(txn, new_status, now)
            errors = validate_transaction(txn)
            if errors:
                raise InvoiceTransitionError("; ".join(errors))
            return txn

        updated = self.store.modify_transaction(transaction_id, transition)
        if updated is None:
            raise TransactionNotFoundError(transaction_id)
        logger.info(
            "Invoice %s set to %s by user", transaction_id, updated.invoice_status.value
        )
        return updated

    def apply_due_invoices(self, user_id: int | None = None) -> list[Transaction]:
        """Settle overdue invoices (explicit trigger for the time-driven rule)."""
        return self.store.apply_due_invoice_transitions(self.clock(), user_id=user_id)

    def delete_transaction(self, transaction_id: str) -> bool:
        """Delete a transaction. Returns True if it existed."""
        deleted = self.store.delete_transaction(transaction_id)
        if deleted:
            logger.info("Deleted transaction %s", transaction_id)
        return deleted
