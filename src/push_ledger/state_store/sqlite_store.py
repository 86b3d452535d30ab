"""
SQLite-based state store implementation.

Tables:
- transactions: Extracted or manually entered transactions
- notifications: Raw push notifications, each linked to one transaction
- user_profiles: Display hints for extraction (migration 002)

Idempotency is enforced by PRIMARY KEY / UNIQUE constraints with
ON CONFLICT DO NOTHING, never by check-then-insert. The invoice invariants
(pay_date iff PAID, invoice fields only on INVOICE) are CHECK constraints,
so concurrent writers cannot break them either.
"""

import logging
import sqlite3
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Optional

from ..schemas.invoice_lifecycle import apply_due_transition
from ..schemas.records import (
    EditedBy,
    InvoiceStatus,
    Notification,
    Transaction,
    TransactionType,
    UserProfile,
    format_timestamp,
    parse_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)

_TRANSACTION_TYPES = ", ".join(f"'{t.value}'" for t in TransactionType)
_INVOICE_STATUSES = ", ".join(f"'{s.value}'" for s in InvoiceStatus)
_EDITED_BY = ", ".join(f"'{e.value}'" for e in EditedBy)


def transaction_from_row(row: sqlite3.Row) -> Transaction:
    """Create a Transaction from a database row."""
    return Transaction(
        id=row["id"],
        user_id=row["user_id"],
        timestamp=parse_timestamp(row["date_time"]),
        amount=Decimal(row["amount"]),
        name=row["name"],
        type=TransactionType(row["type"]) if row["type"] else None,
        edited_by=EditedBy(row["edited_by"]),
        due_date=parse_timestamp(row["due_date"]),
        pay_date=parse_timestamp(row["pay_date"]),
        invoice_status=InvoiceStatus(row["invoice_status"]) if row["invoice_status"] else None,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def notification_from_row(row: sqlite3.Row) -> Notification:
    """Create a Notification from a database row."""
    return Notification(
        id=row["id"],
        user_id=row["user_id"],
        timestamp=parse_timestamp(row["date_time"]),
        title=row["title"],
        body=row["body"],
        transaction_id=row["transaction_id"],
    )


def _window_clause(
    start: Optional[datetime], end: Optional[datetime]
) -> tuple[str, list[str]]:
    clauses: list[str] = []
    params: list[str] = []
    if start is not None:
        clauses.append("date_time >= ?")
        params.append(format_timestamp(start))
    if end is not None:
        clauses.append("date_time <= ?")
        params.append(format_timestamp(end))
    return "".join(f" AND {c}" for c in clauses), params


class StateStore:
    """
    SQLite-based state store for the pipeline.

    Provides persistent tracking of:
    - Transactions (idempotent insert, update, invoice transitions, delete)
    - Notifications (idempotent insert, windowed listing, lookup by transaction)
    - User profiles (extraction hints)

    Every public method is one unit of work: it commits fully or rolls back.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path | str, run_migrations: bool = True):
        """
        Initialize state store.

        Args:
            db_path: Path to SQLite database file
            run_migrations: Whether to run pending migrations (default True)
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()
        if run_migrations:
            self._run_migrations()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions.

        Args:
            immediate: Take the write lock up front, for read-modify-write
                sequences that must not interleave with other writers.
        """
        conn = self._get_connection()
        try:
            if immediate:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            # Schema version tracking
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                )
            """
            )

            # Transactions table
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS transactions (
                    id TEXT PRIMARY KEY,
                    user_id INTEGER NOT NULL,
                    date_time TEXT NOT NULL,
                    amount TEXT NOT NULL,  -- Decimal, 2 places
                    name TEXT NOT NULL,
                    type TEXT CHECK (type IS NULL OR type IN ({_TRANSACTION_TYPES})),
                    edited_by TEXT NOT NULL CHECK (edited_by IN ({_EDITED_BY})),
                    due_date TEXT,
                    pay_date TEXT,
                    invoice_status TEXT
                        CHECK (invoice_status IS NULL OR invoice_status IN ({_INVOICE_STATUSES})),
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    CHECK ((invoice_status IS 'PAID') = (pay_date IS NOT NULL)),
                    CHECK (type IS 'INVOICE' OR (invoice_status IS NULL AND due_date IS NULL))
                )
            """
            )

            # Notifications table (one notification per transaction)
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS notifications (
                    id TEXT NOT NULL,
                    user_id INTEGER NOT NULL,
                    transaction_id TEXT NOT NULL UNIQUE,
                    date_time TEXT NOT NULL,
                    title TEXT NOT NULL DEFAULT '',
                    body TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (user_id, id),
                    FOREIGN KEY (transaction_id) REFERENCES transactions(id) ON DELETE CASCADE
                )
            """
            )

            # Create indexes
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_transactions_user_date "
                "ON transactions(user_id, date_time)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_transactions_user_type "
                "ON transactions(user_id, type)"
            )

            # Set schema version
            conn.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)", (self.SCHEMA_VERSION,)
            )

    def _run_migrations(self) -> None:
        """Run pending database migrations."""
        from .migrations import MigrationRunner

        conn = self._get_connection()
        try:
            runner = MigrationRunner(conn)
            runner.run_pending()
        finally:
            conn.close()

    # Transaction methods

    def insert_transaction(self, txn: Transaction) -> bool:
        """
        Insert a transaction unless one with the same ID exists.

        Returns:
            True if a row was created, False if the ID was already present.

        Raises:
            sqlite3.IntegrityError: If the row violates a CHECK constraint.
        """
        if not txn.id:
            raise ValueError("transaction id is required")
        now = format_timestamp(utc_now())

        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO transactions
                (id, user_id, date_time, amount, name, type, edited_by,
                 due_date, pay_date, invoice_status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO NOTHING
            """,
                (
                    txn.id,
                    txn.user_id,
                    format_timestamp(txn.timestamp),
                    f"{txn.amount:.2f}",
                    txn.name,
                    txn.type.value if txn.type else None,
                    txn.edited_by.value,
                    format_timestamp(txn.due_date),
                    format_timestamp(txn.pay_date),
                    txn.invoice_status.value if txn.invoice_status else None,
                    now,
                    now,
                ),
            )
            inserted = cursor.rowcount > 0

        if not inserted:
            logger.debug("Transaction %s already stored, insert skipped", txn.id)
        return inserted

    def get_transaction(self, transaction_id: str) -> Transaction | None:
        """Get a transaction by ID."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM transactions WHERE id = ?", (transaction_id,)
            ).fetchone()
            return transaction_from_row(row) if row else None

    def list_transactions(
        self,
        user_id: int,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Transaction]:
        """List a user's transactions within an optional window, newest first."""
        window, params = _window_clause(start, end)
        with self._transaction() as conn:
            rows = conn.execute(
                f"SELECT * FROM transactions WHERE user_id = ?{window} "
                "ORDER BY date_time DESC, id",
                [user_id, *params],
            ).fetchall()
            return [transaction_from_row(row) for row in rows]

    def get_latest_transactions_by_type(self, user_id: int) -> list[Transaction]:
        """Get the most recent transaction of each known type for a user."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM (
                    SELECT *, ROW_NUMBER() OVER (
                        PARTITION BY type ORDER BY date_time DESC, id
                    ) AS type_rank
                    FROM transactions
                    WHERE user_id = ? AND type IS NOT NULL
                )
                WHERE type_rank = 1
                ORDER BY date_time DESC
            """,
                (user_id,),
            ).fetchall()
            return [transaction_from_row(row) for row in rows]

    def modify_transaction(
        self,
        transaction_id: str,
        mutate: Callable[[Transaction], Transaction],
    ) -> Transaction | None:
        """
        Read, transform and write back one transaction atomically.

        The write lock is held across the read and the write, so concurrent
        modifications of the same row are serialized.

        Args:
            transaction_id: Transaction to modify
            mutate: Pure function returning the new state; may raise to abort

        Returns:
            The stored new state, or None if the transaction does not exist.
        """
        with self._transaction(immediate=True) as conn:
            row = conn.execute(
                "SELECT * FROM transactions WHERE id = ?", (transaction_id,)
            ).fetchone()
            if row is None:
                return None

            updated = mutate(transaction_from_row(row))
            self._write_transaction(conn, transaction_id, updated)
            return updated

    def _write_transaction(
        self, conn: sqlite3.Connection, transaction_id: str, txn: Transaction
    ) -> None:
        now = format_timestamp(utc_now())
        conn.execute(
            """
            UPDATE transactions
            SET date_time = ?, amount = ?, name = ?, type = ?, edited_by = ?,
                due_date = ?, pay_date = ?, invoice_status = ?, updated_at = ?
            WHERE id = ?
        """,
            (
                format_timestamp(txn.timestamp),
                f"{txn.amount:.2f}",
                txn.name,
                txn.type.value if txn.type else None,
                txn.edited_by.value,
                format_timestamp(txn.due_date),
                format_timestamp(txn.pay_date),
                txn.invoice_status.value if txn.invoice_status else None,
                now,
                transaction_id,
            ),
        )
        txn.updated_at = now

    def apply_due_invoice_transitions(
        self,
        now: datetime,
        user_id: int | None = None,
    ) -> list[Transaction]:
        """
        Settle every overdue CONFIRMED/UNCONFIRMED invoice.

        Args:
            now: Reference time; invoices with due_date before it transition
            user_id: Restrict to one user (None = all users)

        Returns:
            Transactions that changed state.
        """
        user_clause = " AND user_id = ?" if user_id is not None else ""
        params: list = [
            InvoiceStatus.CONFIRMED.value,
            InvoiceStatus.UNCONFIRMED.value,
            format_timestamp(now),
        ]
        if user_id is not None:
            params.append(user_id)

        query = f"""
            SELECT * FROM transactions
            WHERE type = 'INVOICE' AND invoice_status IN (?, ?)
            AND due_date IS NOT NULL AND due_date < ?{user_clause}
        """

        # Unlocked read first; the write lock is only taken when work is due
        with self._transaction() as conn:
            if conn.execute(f"SELECT EXISTS ({query})", params).fetchone()[0] == 0:
                return []

        changed: list[Transaction] = []
        with self._transaction(immediate=True) as conn:
            rows = conn.execute(query, params).fetchall()

            for row in rows:
                updated = apply_due_transition(transaction_from_row(row), now)
                if updated is None:
                    continue
                self._write_transaction(conn, updated.id, updated)
                changed.append(updated)

        if changed:
            logger.info("Settled %d overdue invoice(s)", len(changed))
        return changed

    def delete_transaction(self, transaction_id: str) -> bool:
        """Delete a transaction (its notification cascades). Returns True if deleted."""
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM transactions WHERE id = ?", (transaction_id,))
            return cursor.rowcount > 0

    # Notification methods

    def insert_notification(self, notification: Notification) -> str | None:
        """
        Insert a notification unless it (or its transaction link) exists.

        Returns:
            The notification ID if a row was created, None if it was a no-op.

        Raises:
            sqlite3.IntegrityError: If the linked transaction does not exist.
        """
        if not notification.id or not notification.transaction_id:
            raise ValueError("notification id and transaction_id are required")
        now = format_timestamp(utc_now())

        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO notifications
                (id, user_id, transaction_id, date_time, title, body, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT DO NOTHING
            """,
                (
                    notification.id,
                    notification.user_id,
                    notification.transaction_id,
                    format_timestamp(notification.timestamp),
                    notification.title or "",
                    notification.body,
                    now,
                ),
            )
            return notification.id if cursor.rowcount > 0 else None

    def get_notification(self, user_id: int, notification_id: str) -> Notification | None:
        """Get a notification by owner and ID."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM notifications WHERE user_id = ? AND id = ?",
                (user_id, notification_id),
            ).fetchone()
            return notification_from_row(row) if row else None

    def list_notifications(
        self,
        user_id: int,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Notification]:
        """List a user's notifications within an optional window, newest first."""
        window, params = _window_clause(start, end)
        with self._transaction() as conn:
            rows = conn.execute(
                f"SELECT * FROM notifications WHERE user_id = ?{window} "
                "ORDER BY date_time DESC, id",
                [user_id, *params],
            ).fetchall()
            return [notification_from_row(row) for row in rows]

    def get_notifications_for_transactions(
        self,
        user_id: int,
        transaction_ids: list[str],
    ) -> list[Notification]:
        """Get the notifications that produced the given transactions, newest first."""
        if not transaction_ids:
            return []
        placeholders = ", ".join("?" for _ in transaction_ids)
        with self._transaction() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM notifications
                WHERE user_id = ? AND transaction_id IN ({placeholders})
                ORDER BY date_time DESC
            """,
                [user_id, *transaction_ids],
            ).fetchall()
            return [notification_from_row(row) for row in rows]

    # Profile methods

    def upsert_user_profile(self, profile: UserProfile) -> None:
        """Insert or update a user's display hints."""
        now = format_timestamp(utc_now())
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO user_profiles
                (user_id, first_name, last_name, company_name, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    first_name = excluded.first_name,
                    last_name = excluded.last_name,
                    company_name = excluded.company_name,
                    updated_at = excluded.updated_at
            """,
                (profile.user_id, profile.first_name, profile.last_name, profile.company_name, now),
            )

    def get_user_profile(self, user_id: int) -> UserProfile | None:
        """Get a user's display hints."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM user_profiles WHERE user_id = ?", (user_id,)
            ).fetchone()
            if row is None:
                return None
            return UserProfile(
                user_id=row["user_id"],
                first_name=row["first_name"],
                last_name=row["last_name"],
                company_name=row["company_name"],
            )

    # Statistics

    def get_stats(self, user_id: int | None = None) -> dict:
        """Get counts for the status command."""
        user_filter = " AND user_id = ?" if user_id is not None else ""
        params = (user_id,) if user_id is not None else ()
        with self._transaction() as conn:
            notifications = conn.execute(
                f"SELECT COUNT(*) FROM notifications WHERE 1 = 1{user_filter}", params
            ).fetchone()[0]
            by_type = conn.execute(
                f"SELECT COALESCE(type, 'PLACEHOLDER') AS t, COUNT(*) AS n "
                f"FROM transactions WHERE 1 = 1{user_filter} GROUP BY t ORDER BY t",
                params,
            ).fetchall()
            by_status = conn.execute(
                f"SELECT invoice_status AS s, COUNT(*) AS n FROM transactions "
                f"WHERE invoice_status IS NOT NULL{user_filter} GROUP BY s ORDER BY s",
                params,
            ).fetchall()

        return {
            "notifications": notifications,
            "transactions": {row["t"]: row["n"] for row in by_type},
            "invoices": {row["s"]: row["n"] for row in by_status},
        }
