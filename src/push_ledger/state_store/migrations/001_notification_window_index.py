"""
Migration 001: Index notifications for time-window listing.

Listing a user's notifications newest-first between two instants is the
main read path of the notifications table.
"""

import sqlite3

VERSION = 1
NAME = "notification_window_index"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create the (user_id, date_time) index."""
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_notifications_user_date "
        "ON notifications(user_id, date_time)"
    )


def downgrade(conn: sqlite3.Connection) -> None:
    """Remove the index."""
    conn.execute("DROP INDEX IF EXISTS idx_notifications_user_date")
