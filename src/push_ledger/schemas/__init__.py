"""
SSOT (Single Source of Truth) schemas for the pipeline.

These canonical schemas are the ONLY models used across all modules.
No duplicated "near-same" models allowed.
"""

from .dedupe import (
    ID_LENGTH,
    fingerprint,
    generate_notification_id,
    generate_transaction_id,
    transaction_id_for_notification,
)
from .invoice_lifecycle import (
    INITIAL_STATES,
    MANUAL_TARGETS,
    apply_due_transition,
    apply_manual_transition,
    parse_invoice_status,
    strip_invoice_fields,
    validate_transaction,
)
from .records import (
    EditedBy,
    ExtractionContext,
    ExtractionResult,
    InvoiceStatus,
    Notification,
    Transaction,
    TransactionType,
    UserProfile,
    format_timestamp,
    parse_time_window,
    parse_timestamp,
    to_amount,
    utc_now,
)

__all__ = [
    # Records (canonical schema)
    "Notification",
    "Transaction",
    "TransactionType",
    "EditedBy",
    "InvoiceStatus",
    "UserProfile",
    "ExtractionResult",
    "ExtractionContext",
    "format_timestamp",
    "parse_timestamp",
    "parse_time_window",
    "to_amount",
    "utc_now",
    # Invoice lifecycle
    "INITIAL_STATES",
    "MANUAL_TARGETS",
    "apply_due_transition",
    "apply_manual_transition",
    "parse_invoice_status",
    "strip_invoice_fields",
    "validate_transaction",
    # Dedupe
    "ID_LENGTH",
    "fingerprint",
    "generate_notification_id",
    "generate_transaction_id",
    "transaction_id_for_notification",
]
