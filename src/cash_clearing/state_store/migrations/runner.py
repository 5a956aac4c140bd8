"""
Schema migrations for the state database.

Every module in this package named NNN_<name>.py is one migration:
- VERSION: int, equal to NNN
- NAME: str
- upgrade(conn) -> None
- downgrade(conn) -> None  # Optional; may raise NotImplementedError

Applied versions are recorded in the schema_migrations table.
"""

import importlib
import logging
import pkgutil
import re
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from ...errors import FatalError

logger = logging.getLogger(__name__)

_MODULE_RE = re.compile(r"^(\d{3})_\w+$")


@dataclass(frozen=True)
class Migration:
    """One schema step."""

    version: int
    name: str
    upgrade: Callable[[sqlite3.Connection], None]
    downgrade: Optional[Callable[[sqlite3.Connection], None]] = None


def _load(module_name: str, version: int) -> Migration:
    module = importlib.import_module(f"{__package__}.{module_name}")
    try:
        migration = Migration(
            version=module.VERSION,
            name=module.NAME,
            upgrade=module.upgrade,
            downgrade=getattr(module, "downgrade", None),
        )
    except AttributeError as e:
        raise FatalError(f"Migration {module_name} is incomplete: {e}") from e

    if migration.version != version:
        raise FatalError(
            f"Migration {module_name} declares VERSION {migration.version}, expected {version}"
        )
    return migration


def discover_migrations() -> list[Migration]:
    """Load every migration module in this package, oldest first.

    A broken migration stops the store from opening rather than leaving
    the schema half-applied.
    """
    migrations: dict[int, Migration] = {}
    for info in pkgutil.iter_modules([str(Path(__file__).parent)]):
        match = _MODULE_RE.match(info.name)
        if not match:
            continue
        version = int(match.group(1))
        if version in migrations:
            raise FatalError(f"Duplicate migration version {version}")
        migrations[version] = _load(info.name, version)

    return [migrations[v] for v in sorted(migrations)]


class MigrationRunner:
    """Applies and rolls back migrations on one connection."""

    def __init__(self, conn: sqlite3.Connection, migrations: Optional[list[Migration]] = None):
        self.conn = conn
        self.migrations = migrations if migrations is not None else discover_migrations()
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                applied_at TEXT NOT NULL
            )
        """
        )
        self.conn.commit()

    def applied_versions(self) -> set[int]:
        rows = self.conn.execute("SELECT version FROM schema_migrations").fetchall()
        return {row[0] for row in rows}

    @property
    def current_version(self) -> int:
        """Highest applied version (0 for an empty database)."""
        return max(self.applied_versions(), default=0)

    def pending(self) -> list[Migration]:
        applied = self.applied_versions()
        return [m for m in self.migrations if m.version not in applied]

    def upgrade(self) -> list[int]:
        """Apply all pending migrations in order.

        Returns:
            Versions applied by this call.
        """
        applied = []
        for migration in self.pending():
            logger.info("Applying migration %03d_%s", migration.version, migration.name)
            self._step(migration, migration.upgrade)
            self.conn.execute(
                "INSERT INTO schema_migrations (version, name, applied_at) VALUES (?, ?, ?)",
                (
                    migration.version,
                    migration.name,
                    datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
                ),
            )
            self.conn.commit()
            applied.append(migration.version)

        if not applied:
            logger.debug("Schema is current at version %d", self.current_version)
        return applied

    def rollback_to(self, target_version: int) -> list[int]:
        """Downgrade every applied migration above target_version, newest first.

        Returns:
            Versions rolled back by this call.
        """
        applied = self.applied_versions()
        rolled_back = []
        for migration in sorted(self.migrations, key=lambda m: m.version, reverse=True):
            if migration.version <= target_version or migration.version not in applied:
                continue
            if migration.downgrade is None:
                raise NotImplementedError(
                    f"Migration {migration.version:03d}_{migration.name} cannot be rolled back"
                )
            logger.info("Rolling back migration %03d_%s", migration.version, migration.name)
            self._step(migration, migration.downgrade)
            self.conn.execute("DELETE FROM schema_migrations WHERE version = ?", (migration.version,))
            self.conn.commit()
            rolled_back.append(migration.version)
        return rolled_back

    def _step(self, migration: Migration, operation: Callable[[sqlite3.Connection], None]) -> None:
        try:
            operation(self.conn)
        except Exception:
            self.conn.rollback()
            logger.error("Migration %03d_%s failed", migration.version, migration.name)
            raise
