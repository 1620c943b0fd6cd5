"""
Outbox: durable FIFO queue of local mutations awaiting the remote.

Each entry gets its idempotency key once, at enqueue time. Retries reuse the
same key so the remote can collapse duplicate deliveries.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from invoice_sync.local_store import LocalStore

logger = logging.getLogger(__name__)


class SyncState(str, Enum):
    """Delivery state of an outbox entry."""

    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"  # Retry ceiling reached; kept for operator visibility


class MutationType(str, Enum):
    """Mutation kinds understood by the remote batch endpoint."""

    CREATE_INVOICE = "CREATE_INVOICE"
    UPDATE_INVOICE = "UPDATE_INVOICE"
    CREATE_CUSTOMER = "CREATE_CUSTOMER"
    UPDATE_CUSTOMER = "UPDATE_CUSTOMER"
    CREATE_PRODUCT = "CREATE_PRODUCT"
    UPDATE_PRODUCT = "UPDATE_PRODUCT"


@dataclass
class OutboxEntry:
    """A queued mutation."""

    id: int
    type: str
    data: dict[str, Any]
    idempotency_key: str
    timestamp: str  # ISO timestamp of enqueue
    sync_state: SyncState
    retry_count: int
    error: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> OutboxEntry:
        """Create from database row."""
        return cls(
            id=row["id"],
            type=row["type"],
            data=json.loads(row["data"]),
            idempotency_key=row["idempotency_key"],
            timestamp=row["timestamp"],
            sync_state=SyncState(row["sync_state"]),
            retry_count=row["retry_count"],
            error=row["error"],
        )


class Outbox:
    """
    Mutation queue stored in the local store's `outbox` table.

    Storage failures surface as LocalStoreError; nothing here is retried.
    """

    def __init__(self, store: LocalStore):
        self.store = store

    def enqueue(
        self,
        type_: MutationType | str,
        data: dict[str, Any],
        conn: sqlite3.Connection | None = None,
    ) -> str:
        """
        Append a pending mutation.

        Args:
            type_: Mutation kind, e.g. CREATE_INVOICE
            data: JSON-serializable payload
            conn: Join an open local transaction (optimistic write + enqueue)

        Returns:
            The idempotency key generated for this entry
        """
        idempotency_key = str(uuid.uuid4())
        now = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        type_value = type_.value if isinstance(type_, MutationType) else str(type_)

        with self.store._use(conn) as c:
            cursor = c.execute(
                """
                INSERT INTO outbox
                (type, data, idempotency_key, timestamp, sync_state, retry_count)
                VALUES (?, ?, ?, ?, ?, 0)
            """,
                (type_value, json.dumps(data), idempotency_key, now, SyncState.PENDING.value),
            )
            entry_id = cursor.lastrowid

        logger.debug("Enqueued %s as outbox entry #%s (key=%s)", type_value, entry_id, idempotency_key)
        return idempotency_key

    def get(self, entry_id: int) -> OutboxEntry | None:
        """Get an outbox entry by id."""
        with self.store.transaction() as conn:
            row = conn.execute("SELECT * FROM outbox WHERE id = ?", (entry_id,)).fetchone()
            return OutboxEntry.from_row(row) if row else None

    def pending_entries(self) -> list[OutboxEntry]:
        """All pending entries, oldest first."""
        return self._entries_in_state(SyncState.PENDING)

    def failed_entries(self) -> list[OutboxEntry]:
        """Entries that hit the retry ceiling, oldest first."""
        return self._entries_in_state(SyncState.FAILED)

    def _entries_in_state(self, state: SyncState) -> list[OutboxEntry]:
        with self.store.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM outbox WHERE sync_state = ? ORDER BY id ASC", (state.value,)
            ).fetchall()
            return [OutboxEntry.from_row(row) for row in rows]

    def mark_synced(self, entry_id: int, conn: sqlite3.Connection | None = None) -> None:
        """Mark an entry as delivered."""
        with self.store._use(conn) as c:
            c.execute(
                "UPDATE outbox SET sync_state = ?, error = NULL WHERE id = ?",
                (SyncState.SYNCED.value, entry_id),
            )

    def mark_failed(self, entry_id: int, error: str | None) -> None:
        """Mark an entry as permanently failed, keeping the error message."""
        with self.store.transaction() as conn:
            conn.execute(
                "UPDATE outbox SET sync_state = ?, error = ? WHERE id = ?",
                (SyncState.FAILED.value, error, entry_id),
            )
        logger.warning("Outbox entry #%d marked failed: %s", entry_id, error)

    def increment_retry(self, entry_id: int, error: str | None = None) -> int:
        """Bump the retry count. Returns the new count."""
        with self.store.transaction() as conn:
            conn.execute(
                "UPDATE outbox SET retry_count = retry_count + 1, error = ? WHERE id = ?",
                (error, entry_id),
            )
            row = conn.execute(
                "SELECT retry_count FROM outbox WHERE id = ?", (entry_id,)
            ).fetchone()
            return row["retry_count"] if row else 0

    def pending_count(self) -> int:
        """Number of entries awaiting delivery."""
        return self._count_in_state(SyncState.PENDING)

    def failed_count(self) -> int:
        """Number of entries blocked at the retry ceiling."""
        return self._count_in_state(SyncState.FAILED)

    def _count_in_state(self, state: SyncState) -> int:
        with self.store.transaction() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM outbox WHERE sync_state = ?", (state.value,)
            ).fetchone()[0]

    def remap_record_id(
        self,
        old_id: str,
        new_id: str,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        """
        Rewrite pending entries that still carry a replaced record id.

        Covers the record's own id and the customer, product and invoice
        references, including those of nested line items. Returns the number
        of entries rewritten.
        """
        count = 0
        with self.store._use(conn) as c:
            rows = c.execute(
                "SELECT id, data FROM outbox WHERE sync_state = ? ORDER BY id ASC",
                (SyncState.PENDING.value,),
            ).fetchall()
            for row in rows:
                data = json.loads(row["data"])
                remapped = _remap_references(data, old_id, new_id)
                if remapped != data:
                    c.execute(
                        "UPDATE outbox SET data = ? WHERE id = ?",
                        (json.dumps(remapped), row["id"]),
                    )
                    count += 1
        if count:
            logger.info("Remapped %s -> %s in %d pending outbox entries", old_id, new_id, count)
        return count

    def clear_synced(self) -> int:
        """Remove delivered entries. Returns count of deleted rows."""
        with self.store.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM outbox WHERE sync_state = ?", (SyncState.SYNCED.value,)
            )
            count = cursor.rowcount
        if count:
            logger.info("Cleared %d synced outbox entries", count)
        return count

    def retry_failed(self, entry_id: int) -> bool:
        """Put a failed entry back in the queue with its original key."""
        with self.store.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE outbox
                SET sync_state = ?, retry_count = 0, error = NULL
                WHERE id = ? AND sync_state = ?
            """,
                (SyncState.PENDING.value, entry_id, SyncState.FAILED.value),
            )
            return cursor.rowcount > 0


_REFERENCE_FIELDS = ("id", "invoiceId", "customerId", "productId")


def _remap_references(data: dict[str, Any], old_id: str, new_id: str) -> dict[str, Any]:
    remapped = {
        key: new_id if key in _REFERENCE_FIELDS and value == old_id else value
        for key, value in data.items()
    }
    if isinstance(remapped.get("lineItems"), list):
        remapped["lineItems"] = [
            _remap_references(item, old_id, new_id) if isinstance(item, dict) else item
            for item in remapped["lineItems"]
        ]
    return remapped
