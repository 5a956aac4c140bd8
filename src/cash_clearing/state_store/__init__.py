"""
State Store (SQLite-based).

Lightweight persistent DB for tracking:
- Cash transactions awaiting resolution
- Suggestions (append-only, superseded rather than deleted)
- Batch runs and their checkpoints
- Approval audit log

Enforces at most one active suggestion per transaction.
"""

from .base import PersistenceSink
from .sqlite_store import SqliteStateStore

__all__ = [
    "PersistenceSink",
    "SqliteStateStore",
]
