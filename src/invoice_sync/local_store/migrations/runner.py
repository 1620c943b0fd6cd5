"""
Migration runner for the local store schema.

Migrations are named with format: {version}_{name}.py
E.g., 001_domain_tables.py, 002_sync_tables.py

Each migration must define:
- VERSION: int
- NAME: str
- upgrade(conn: Connection) -> None
- downgrade(conn: Connection) -> None  # May raise NotImplementedError
"""

import importlib
import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class Migration:
    """A single schema migration."""

    version: int
    name: str
    upgrade: Callable[[sqlite3.Connection], None]
    downgrade: Callable[[sqlite3.Connection], None] | None


def get_all_migrations() -> list[Migration]:
    """Load every migration module in this package, sorted by version."""
    migrations = []
    migrations_dir = Path(__file__).parent

    for py_file in sorted(migrations_dir.glob("[0-9][0-9][0-9]_*.py")):
        module = importlib.import_module(f"{__package__}.{py_file.stem}")
        migrations.append(
            Migration(
                version=module.VERSION,
                name=module.NAME,
                upgrade=module.upgrade,
                downgrade=getattr(module, "downgrade", None),
            )
        )

    return sorted(migrations, key=lambda m: m.version)


class MigrationRunner:
    """
    Runs local store migrations in order.

    Tracks applied migrations in a `migrations` table.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self._ensure_migrations_table()

    def _ensure_migrations_table(self) -> None:
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS migrations (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                applied_at TEXT NOT NULL
            )
        """
        )
        self.conn.commit()

    def get_applied_versions(self) -> set[int]:
        """Get set of applied migration versions."""
        cursor = self.conn.execute("SELECT version FROM migrations ORDER BY version")
        return {row[0] for row in cursor.fetchall()}

    def get_current_version(self) -> int:
        """Get the highest applied migration version."""
        result = self.conn.execute("SELECT MAX(version) FROM migrations").fetchone()[0]
        return result if result is not None else 0

    def apply_migration(self, migration: Migration) -> None:
        """Apply a single migration and record it."""
        logger.info("Applying migration %d: %s", migration.version, migration.name)

        try:
            migration.upgrade(self.conn)
            now = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
            self.conn.execute(
                "INSERT INTO migrations (version, name, applied_at) VALUES (?, ?, ?)",
                (migration.version, migration.name, now),
            )
            self.conn.commit()
        except Exception as e:
            self.conn.rollback()
            logger.error("Migration %d failed: %s", migration.version, e)
            raise

    def rollback_migration(self, migration: Migration) -> None:
        """Roll back a single migration."""
        if migration.downgrade is None:
            raise NotImplementedError(
                f"Migration {migration.version} ({migration.name}) does not support rollback"
            )

        logger.info("Rolling back migration %d: %s", migration.version, migration.name)

        try:
            migration.downgrade(self.conn)
            self.conn.execute("DELETE FROM migrations WHERE version = ?", (migration.version,))
            self.conn.commit()
        except Exception as e:
            self.conn.rollback()
            logger.error("Migration %d rollback failed: %s", migration.version, e)
            raise

    def run_pending(self) -> list[int]:
        """
        Run all pending migrations.

        Returns list of applied migration versions.
        """
        applied = self.get_applied_versions()
        pending = [m for m in get_all_migrations() if m.version not in applied]

        applied_versions = []
        for migration in pending:
            self.apply_migration(migration)
            applied_versions.append(migration.version)

        if applied_versions:
            logger.info("Applied %d migrations: %s", len(applied_versions), applied_versions)
        else:
            logger.debug("No pending migrations")

        return applied_versions

    def migrate_to(self, target_version: int) -> None:
        """Migrate up or down to a specific schema version."""
        current = self.get_current_version()
        migration_map = {m.version: m for m in get_all_migrations()}

        if target_version > current:
            for version in range(current + 1, target_version + 1):
                if version in migration_map:
                    self.apply_migration(migration_map[version])
        elif target_version < current:
            for version in range(current, target_version, -1):
                if version in migration_map:
                    self.rollback_migration(migration_map[version])
