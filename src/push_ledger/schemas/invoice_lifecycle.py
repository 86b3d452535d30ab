"""
Invoice lifecycle state machine.

States: CONFIRMED, UNCONFIRMED, CANCELED, PAID, UNPAID.

- Initial state (extraction or manual entry): CONFIRMED or UNCONFIRMED
- Time-driven, once now > due_date:
    CONFIRMED   -> PAID    (pay_date stamped)
    UNCONFIRMED -> UNPAID
  Not scheduled here: callers trigger it explicitly (periodic job or
  check-on-read).
- Manual (user action): any state -> CANCELED | PAID | UNPAID
  Entering PAID stamps pay_date, anything else clears it, edited_by = USER.
- CANCELED is only reachable manually and never left automatically.

All functions are pure: they return a new Transaction and never mutate
their input. "now" is always passed in by the caller.
"""

from dataclasses import replace
from datetime import datetime
from typing import Optional

from ..errors import InvoiceTransitionError
from .records import EditedBy, InvoiceStatus, Transaction, TransactionType

INITIAL_STATES = frozenset({InvoiceStatus.CONFIRMED, InvoiceStatus.UNCONFIRMED})

MANUAL_TARGETS = frozenset({InvoiceStatus.CANCELED, InvoiceStatus.PAID, InvoiceStatus.UNPAID})

DUE_TRANSITIONS = {
    InvoiceStatus.CONFIRMED: InvoiceStatus.PAID,
    InvoiceStatus.UNCONFIRMED: InvoiceStatus.UNPAID,
}


def parse_invoice_status(value: str | InvoiceStatus) -> InvoiceStatus:
    """Parse a status name (case-insensitive); raises InvoiceTransitionError."""
    if isinstance(value, InvoiceStatus):
        return value
    try:
        return InvoiceStatus(str(value).strip().upper())
    except ValueError as e:
        raise InvoiceTransitionError(f"Unknown invoice status: {value!r}") from e


def apply_manual_transition(
    txn: Transaction,
    new_status: str | InvoiceStatus,
    now: datetime,
) -> Transaction:
    """
    Apply a user-initiated status change.

    Raises:
        InvoiceTransitionError: If the transaction is not an invoice or the
            target is not one of CANCELED, PAID, UNPAID.
    """
    status = parse_invoice_status(new_status)
    if not txn.is_invoice:
        type_name = txn.type.value if txn.type else "untyped"
        raise InvoiceTransitionError(
            f"Transaction '{txn.id}' is {type_name}, invoice status only applies to INVOICE"
        )
    if status not in MANUAL_TARGETS:
        raise InvoiceTransitionError(
            f"Cannot set invoice status to {status.value} manually "
            f"(allowed: {', '.join(sorted(s.value for s in MANUAL_TARGETS))})"
        )

    return replace(
        txn,
        invoice_status=status,
        pay_date=now if status == InvoiceStatus.PAID else None,
        edited_by=EditedBy.USER,
    )


def apply_due_transition(txn: Transaction, now: datetime) -> Optional[Transaction]:
    """
    Apply the time-driven transition if the due date has passed.

    Returns the transitioned transaction, or None when nothing changes.
    """
    if not txn.is_invoice or txn.due_date is None:
        return None
    target = DUE_TRANSITIONS.get(txn.invoice_status)
    if target is None or now <= txn.due_date:
        return None

    return replace(
        txn,
        invoice_status=target,
        pay_date=now if target == InvoiceStatus.PAID else None,
    )


def validate_transaction(txn: Transaction) -> list[str]:
    """
    Check the invoice invariants.

    Returns:
        List of violations (empty if valid)
    """
    errors: list[str] = []

    if (txn.pay_date is not None) != (txn.invoice_status == InvoiceStatus.PAID):
        errors.append("pay_date must be set if and only if invoice_status is PAID")

    if txn.type != TransactionType.INVOICE:
        if txn.invoice_status is not None:
            errors.append("invoice_status is only allowed on INVOICE transactions")
        if txn.due_date is not None:
            errors.append("due_date is only allowed on INVOICE transactions")

    return errors


def strip_invoice_fields(txn: Transaction) -> Transaction:
    """Clear invoice-only fields from a non-invoice transaction."""
    if txn.is_invoice:
        return txn
    return replace(txn, invoice_status=None, due_date=None, pay_date=None)
