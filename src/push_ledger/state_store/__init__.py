"""
State Store (SQLite-based).

Lightweight persistent DB for tracking:
- Transactions extracted from notifications or entered manually
- Notifications, each linked to exactly one transaction
- User profiles used as extraction hints

Enforces uniqueness on record fingerprints and on the
notification -> transaction link.
"""

from .sqlite_store import (
    StateStore,
    notification_from_row,
    transaction_from_row,
)

__all__ = [
    "StateStore",
    "notification_from_row",
    "transaction_from_row",
]
