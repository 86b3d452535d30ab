"""
Canonical notification and transaction records (SSOT).

These dataclasses are the only record shapes used across the pipeline.
The store maps rows into them, the extraction module maps LLM output into
them, and the CLI serializes them with to_dict().

Timestamps are naive UTC datetimes with second precision. Aware inputs are
converted to UTC on parse so that equal instants always hash and compare
identically.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Optional


class TransactionType(str, Enum):
    """Kind of financial movement."""

    INCOME = "INCOME"
    EXPENSE = "EXPENSE"
    INVOICE = "INVOICE"
    REFUND = "REFUND"
    TRANSFER = "TRANSFER"
    DIVIDEND = "DIVIDEND"


class EditedBy(str, Enum):
    """Who last shaped the record."""

    AUTO = "AUTO"
    USER = "USER"


class InvoiceStatus(str, Enum):
    """Payment status of an INVOICE transaction."""

    CONFIRMED = "CONFIRMED"
    UNCONFIRMED = "UNCONFIRMED"
    CANCELED = "CANCELED"
    PAID = "PAID"
    UNPAID = "UNPAID"


TWO_PLACES = Decimal("0.01")


def utc_now() -> datetime:
    """Current time as naive UTC, truncated to seconds."""
    return datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0)


def normalize_timestamp(value: datetime) -> datetime:
    """Convert to naive UTC with second precision."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.replace(microsecond=0)


def parse_timestamp(value: str | datetime | None) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp.

    Accepts a trailing "Z" and date-only strings (midnight). Returns None
    for empty input; raises ValueError for malformed input.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        if len(text) == 10:
            return datetime.combine(date.fromisoformat(text), time.min)
        parsed = datetime.fromisoformat(text)
    # Offsets at the edge of the datetime range cannot be moved to UTC
    try:
        return normalize_timestamp(parsed)
    except OverflowError as e:
        raise ValueError(f"Timestamp out of range: {value!r}") from e


def format_timestamp(value: datetime | None) -> Optional[str]:
    """Serialize a timestamp the way it is stored."""
    if value is None:
        return None
    return normalize_timestamp(value).isoformat(timespec="seconds")


def to_amount(value: Decimal | str | float | int | None) -> Decimal:
    """
    Normalize an amount to a Decimal with 2 fractional digits.

    Floats go through str() to avoid binary artifacts; strings may use a
    comma as decimal separator.
    """
    if value is None:
        raise ValueError("amount is required")
    if isinstance(value, bool):
        raise ValueError(f"amount must be numeric, got: {value!r}")
    if isinstance(value, float):
        value = str(value)
    if isinstance(value, str):
        value = value.strip().replace(",", ".")
    try:
        amount = Decimal(value)
        if not amount.is_finite():
            raise ValueError(f"Invalid amount: {value!r}")
        # Raises InvalidOperation past the context precision
        return amount.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"Invalid amount: {value!r}") from e


def parse_time_window(
    start_date: str | None = None,
    end_date: str | None = None,
) -> tuple[Optional[datetime], Optional[datetime]]:
    """
    Turn YYYY-MM-DD query values into an inclusive datetime window.

    The start covers the whole first day (00:00:00), the end the whole last
    day (23:59:59). Either side may be omitted.
    """
    start = datetime.combine(date.fromisoformat(start_date), time.min) if start_date else None
    end = datetime.combine(date.fromisoformat(end_date), time(23, 59, 59)) if end_date else None
    return start, end


@dataclass
class Notification:
    """One raw push-notification event."""

    user_id: int
    timestamp: datetime
    title: str
    body: str
    id: str = ""
    transaction_id: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "timestamp": format_timestamp(self.timestamp),
            "title": self.title,
            "body": self.body,
            "transaction_id": self.transaction_id,
        }


@dataclass
class Transaction:
    """
    One financial movement, extracted or manually entered.

    Invoice fields (due_date, invoice_status, pay_date) are only populated
    when type is INVOICE, and pay_date is set exactly when the invoice is
    PAID. Placeholders carry no type.
    """

    user_id: int
    timestamp: datetime
    amount: Decimal
    name: str
    type: Optional[TransactionType] = None
    edited_by: EditedBy = EditedBy.USER
    due_date: Optional[datetime] = None
    pay_date: Optional[datetime] = None
    invoice_status: Optional[InvoiceStatus] = None
    id: str = ""
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_invoice(self) -> bool:
        return self.type == TransactionType.INVOICE

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "timestamp": format_timestamp(self.timestamp),
            "amount": f"{self.amount:.2f}",
            "name": self.name,
            "type": self.type.value if self.type else None,
            "edited_by": self.edited_by.value,
            "due_date": format_timestamp(self.due_date),
            "pay_date": format_timestamp(self.pay_date),
            "invoice_status": self.invoice_status.value if self.invoice_status else None,
        }


@dataclass
class UserProfile:
    """Display hints used to disambiguate counterparties."""

    user_id: int
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    company_name: Optional[str] = None

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)


@dataclass
class ExtractionResult:
    """
    Candidate transaction as returned by the extraction service.

    Every field is optional; is_complete decides whether the candidate may
    be promoted into a Transaction or must fall back to a placeholder.
    """

    amount: Optional[Decimal] = None
    name: Optional[str] = None
    type: Optional[TransactionType] = None
    due_date: Optional[datetime] = None
    invoice_status: Optional[InvoiceStatus] = None

    @property
    def missing_fields(self) -> list[str]:
        missing = [
            f for f, v in (("amount", self.amount), ("name", self.name), ("type", self.type))
            if v is None or v == ""
        ]
        if self.type == TransactionType.INVOICE:
            if self.due_date is None:
                missing.append("due_date")
            if self.invoice_status not in (InvoiceStatus.CONFIRMED, InvoiceStatus.UNCONFIRMED):
                missing.append("invoice_status")
        return missing

    @property
    def is_complete(self) -> bool:
        return not self.missing_fields


@dataclass
class ExtractionContext:
    """History handed to the extractor so recurring counterparties resolve."""

    profile: Optional[UserProfile] = None
    recent_transactions: list[Transaction] = field(default_factory=list)
    recent_notifications: list[Notification] = field(default_factory=list)

    def notification_for(self, transaction_id: str) -> Optional[Notification]:
        """Originating notification of a context transaction, if known."""
        for notification in self.recent_notifications:
            if notification.transaction_id == transaction_id:
                return notification
        return None
