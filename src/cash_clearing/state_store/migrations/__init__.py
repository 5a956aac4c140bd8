"""
Database migrations module.

Versioned, ordered schema steps for the SQLite state store, tracked in the
schema_migrations table.
"""

from .runner import Migration, MigrationRunner, discover_migrations

__all__ = ["Migration", "MigrationRunner", "discover_migrations"]
