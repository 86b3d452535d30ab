"""
Migration 002: Create user_profiles table.

Profiles hold the display hints (first/last name, company) handed to the
extraction service so that transfers between the user's own accounts and
salary from the user's employer can be told apart.
"""

import sqlite3

VERSION = 2
NAME = "user_profiles"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create the user_profiles table."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS user_profiles (
            user_id INTEGER PRIMARY KEY,
            first_name TEXT,
            last_name TEXT,
            company_name TEXT,
            updated_at TEXT NOT NULL
        )
        """
    )


def downgrade(conn: sqlite3.Connection) -> None:
    """Remove the user_profiles table."""
    conn.execute("DROP TABLE IF EXISTS user_profiles")
