"""
Migration 004: Track which suggestion resolved a transaction.

The pattern of a cash transaction is written exactly once; these columns
record when and by which suggestion.
"""

import sqlite3

VERSION = 4
NAME = "transaction_resolution"


def upgrade(conn: sqlite3.Connection) -> None:
    """Add resolved_at / resolved_by_suggestion to cash_transactions."""
    cursor = conn.execute("PRAGMA table_info(cash_transactions)")
    columns = [row[1] for row in cursor.fetchall()]

    if "resolved_at" not in columns:
        conn.execute("ALTER TABLE cash_transactions ADD COLUMN resolved_at TEXT")
    if "resolved_by_suggestion" not in columns:
        conn.execute("ALTER TABLE cash_transactions ADD COLUMN resolved_by_suggestion TEXT")


def downgrade(conn: sqlite3.Connection) -> None:
    """Remove the resolution columns (requires SQLite >= 3.35 for DROP COLUMN)."""
    if sqlite3.sqlite_version_info < (3, 35, 0):
        raise NotImplementedError("DROP COLUMN requires SQLite 3.35.0 or newer")
    conn.execute("ALTER TABLE cash_transactions DROP COLUMN resolved_by_suggestion")
    conn.execute("ALTER TABLE cash_transactions DROP COLUMN resolved_at")
