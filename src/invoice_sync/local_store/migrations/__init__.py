"""
Local store schema migrations.

Versioned, ordered migrations for the SQLite local store. Applied in order
and tracked in a migrations table.
"""

from .runner import MigrationRunner, get_all_migrations

__all__ = ["MigrationRunner", "get_all_migrations"]
