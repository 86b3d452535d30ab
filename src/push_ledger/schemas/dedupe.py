"""
Dedupe key generation (CRITICAL).

This module defines THE deterministic identifiers for notifications and
transactions. This is the ONLY way to generate record IDs in the system.

ID Formats (all are the first 20 hex chars of a SHA-256 digest, 80 bits):
1. Notification: SHA256("{timestamp}-{title}-{body}")
2. Transaction from a notification: SHA256("txn-{user_id}-{notification_id}")
   - Independent of extraction output, so a retry after an extraction
     failure resolves to the same row as the earlier placeholder
3. Manually entered transaction: SHA256("{user_id}-{timestamp}-{name}-{amount}")

The IDs must be:
- Stable: Same inputs always produce same output, across processes
- Collision-resistant: 80 bits is negligible risk at per-user volumes
- Reproducible: Can be regenerated from stored data
"""

import hashlib
from datetime import datetime
from decimal import Decimal

from .records import format_timestamp, parse_timestamp, to_amount

# Length of the hex digest prefix used as identifier
ID_LENGTH = 20

# Separator between hashed components
FIELD_SEPARATOR = "-"

# Marker distinguishing notification-derived transaction IDs
TRANSACTION_MARKER = "txn"


def fingerprint(*parts: object) -> str:
    """
    Hash the given parts into a fixed-length identifier.

    None parts hash as empty strings.

    Examples:
        >>> fingerprint("a", "b") == fingerprint("a", "b")
        True
        >>> len(fingerprint("a"))
        20
    """
    canonical = FIELD_SEPARATOR.join("" if p is None else str(p) for p in parts)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:ID_LENGTH]


def _canonical_timestamp(timestamp: datetime | str | None) -> str:
    parsed = parse_timestamp(timestamp)
    return format_timestamp(parsed) or ""


def generate_notification_id(
    timestamp: datetime | str | None,
    title: str | None,
    body: str | None,
) -> str:
    """
    Generate the identity of a notification from its content.

    The timestamp is normalized first, so "2025-04-01T10:00:00Z" and
    "2025-04-01T12:00:00+02:00" produce the same ID.
    """
    return fingerprint(_canonical_timestamp(timestamp), title or "", body or "")


def transaction_id_for_notification(user_id: int, notification_id: str) -> str:
    """Generate the identity of the transaction extracted from a notification."""
    return fingerprint(TRANSACTION_MARKER, user_id, notification_id)


def generate_transaction_id(
    user_id: int,
    timestamp: datetime | str | None,
    name: str | None = None,
    amount: Decimal | str | float | None = None,
) -> str:
    """
    Generate the identity of a manually entered transaction.

    Name is normalized (stripped, lowercased) and amount to 2 decimals, so
    cosmetic differences do not bypass deduplication.
    """
    normalized_name = name.strip().lower() if name else ""
    normalized_amount = f"{to_amount(amount):.2f}" if amount is not None else ""
    return fingerprint(user_id, _canonical_timestamp(timestamp), normalized_name, normalized_amount)
