"""
Migration 002: Add audit_log table.

Every approval transition (single or batch) writes one row here.
"""

import sqlite3

VERSION = 2
NAME = "audit_log"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create audit_log table."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS audit_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            suggestion_id TEXT NOT NULL,
            action TEXT NOT NULL,  -- APPROVE, REJECT, BATCH_APPROVE, BATCH_REJECT
            actor TEXT NOT NULL,
            reason TEXT,
            previous_status TEXT,
            new_status TEXT,
            created_at TEXT NOT NULL,
            FOREIGN KEY (suggestion_id) REFERENCES suggestions(id)
        )
    """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_log_suggestion ON audit_log(suggestion_id)")


def downgrade(conn: sqlite3.Connection) -> None:
    """Remove audit_log table."""
    conn.execute("DROP TABLE IF EXISTS audit_log")
