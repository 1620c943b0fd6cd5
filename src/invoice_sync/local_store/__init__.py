"""
Local Store (SQLite-based).

Durable on-device storage for:
- Invoices and their line items (replaced as a set on every save)
- Customers, products, business settings, template configs
- Sync metadata (lastSyncAt)

No network access happens here.
"""

from .schema import LAST_SYNC_AT_KEY, TABLES, RecordType
from .sqlite_store import LocalStore, LocalStoreError

__all__ = [
    "LocalStore",
    "LocalStoreError",
    "RecordType",
    "TABLES",
    "LAST_SYNC_AT_KEY",
]
