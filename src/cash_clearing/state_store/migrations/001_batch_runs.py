"""
Migration 001: Add batch_runs and batch_items tables.

batch_runs holds one row per orchestrator run with its checkpoint.
batch_items records every transaction accounted for in a run, which is
what makes resume idempotent.
"""

import sqlite3

VERSION = 1
NAME = "batch_runs"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create batch_runs and batch_items tables."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS batch_runs (
            batch_id TEXT PRIMARY KEY,
            status TEXT NOT NULL,  -- RUNNING, PAUSED, COMPLETED, FAILED
            total INTEGER NOT NULL DEFAULT 0,
            processed INTEGER NOT NULL DEFAULT 0,
            succeeded INTEGER NOT NULL DEFAULT 0,
            failed INTEGER NOT NULL DEFAULT 0,
            cursor TEXT,
            errors TEXT,  -- JSON: [{"batch_index": 0, "error": "..."}]
            options TEXT,  -- JSON: batch_size, concurrency, daily_limit, ...
            started_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            completed_at TEXT
        )
    """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS batch_items (
            batch_id TEXT NOT NULL,
            transaction_id TEXT NOT NULL,
            suggestion_id TEXT,
            status TEXT NOT NULL,  -- SUCCEEDED, FAILED
            error TEXT,
            created_at TEXT NOT NULL,
            PRIMARY KEY (batch_id, transaction_id),
            FOREIGN KEY (batch_id) REFERENCES batch_runs(batch_id)
        )
    """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_batch_runs_status ON batch_runs(status)")


def downgrade(conn: sqlite3.Connection) -> None:
    """Remove batch_items and batch_runs tables."""
    conn.execute("DROP TABLE IF EXISTS batch_items")
    conn.execute("DROP TABLE IF EXISTS batch_runs")
