"""
Error taxonomy shared by the store, the orchestrator and the CLI.

Every error carries an ErrorKind so callers can decide whether a retry
makes sense without string matching on messages.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Kind of failure reported to the caller."""

    PARAMETER_MISSING = "PARAMETER_MISSING"
    INVALID_PARAMETER = "INVALID_PARAMETER"
    CONFLICT = "CONFLICT"
    NOT_FOUND = "NOT_FOUND"
    INVALID_STATE = "INVALID_STATE"


class LedgerError(Exception):
    """Base exception for push-ledger errors."""

    kind: ErrorKind = ErrorKind.INVALID_PARAMETER

    def __init__(self, message: str, kind: ErrorKind | None = None):
        self.message = message
        if kind is not None:
            self.kind = kind
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {"error_kind": self.kind.value, "error_message": self.message}


class InputValidationError(LedgerError):
    """Request is missing fields or carries malformed values."""

    kind = ErrorKind.INVALID_PARAMETER


class IngestConflictError(LedgerError):
    """No transaction of a batch could be persisted."""

    kind = ErrorKind.CONFLICT

    def __init__(self, message: str, errors: list[str] | None = None):
        self.errors = errors or []
        super().__init__(message)


class TransactionNotFoundError(LedgerError):
    """Referenced transaction does not exist."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction '{transaction_id}' not found")


class InvoiceTransitionError(LedgerError):
    """Invoice status change violates the invoice lifecycle."""

    kind = ErrorKind.INVALID_STATE
