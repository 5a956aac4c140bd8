"""
Migration 003: Add supersede columns to suggestions.

Reprocessing a transaction supersedes its earlier PENDING suggestion
instead of deleting it. The partial unique index guarantees at most one
active (PENDING, not superseded) suggestion per transaction.
"""

import sqlite3

VERSION = 3
NAME = "suggestion_supersede"


def upgrade(conn: sqlite3.Connection) -> None:
    """Add superseded_by / superseded_at and the active-suggestion index."""
    cursor = conn.execute("PRAGMA table_info(suggestions)")
    columns = [row[1] for row in cursor.fetchall()]

    if "superseded_by" not in columns:
        conn.execute("ALTER TABLE suggestions ADD COLUMN superseded_by TEXT")
    if "superseded_at" not in columns:
        conn.execute("ALTER TABLE suggestions ADD COLUMN superseded_at TEXT")

    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_suggestions_one_active
        ON suggestions(transaction_id)
        WHERE approval_status = 'PENDING' AND superseded_by IS NULL
    """
    )


def downgrade(conn: sqlite3.Connection) -> None:
    """Remove the index and columns (requires SQLite >= 3.35 for DROP COLUMN)."""
    conn.execute("DROP INDEX IF EXISTS idx_suggestions_one_active")
    if sqlite3.sqlite_version_info < (3, 35, 0):
        raise NotImplementedError("DROP COLUMN requires SQLite 3.35.0 or newer")
    conn.execute("ALTER TABLE suggestions DROP COLUMN superseded_at")
    conn.execute("ALTER TABLE suggestions DROP COLUMN superseded_by")
