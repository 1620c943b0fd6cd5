"""
SQLite-based local store implementation.

Tables:
- invoices, invoice_line_items: invoice headers and their line items
- customers, products: business catalogue records
- business_settings, template_configs: per-business configuration
- sync_meta: key -> value (lastSyncAt)
- outbox: pending mutations (see invoice_sync.outbox)
- drafts: in-progress invoice forms (see invoice_sync.services.drafts)

Every compound write runs in a single SQLite transaction; a failure at any
point rolls the whole write back.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from .schema import LAST_SYNC_AT_KEY, TABLES, RecordType, TableSpec

logger = logging.getLogger(__name__)


class LocalStoreError(Exception):
    """A local storage read or write failed."""

    pass


def _column_value(value: Any) -> Any:
    """Convert a record field into something SQLite can index."""
    if value is None or isinstance(value, (str, int, float)):
        # bool is an int subclass and lands as 0/1
        return value
    return json.dumps(value, sort_keys=True)


class LocalStore:
    """
    SQLite-based local store for domain records.

    Records are opaque dicts identified by a client-generated `id`. Each
    record type is stored in its own table with the indexed fields pulled
    out into columns.

    Writes are serialized through a process-wide lock (one writer at a time).
    """

    def __init__(self, db_path: Path | str, run_migrations: bool = True):
        """
        Initialize local store.

        Args:
            db_path: Path to SQLite database file
            run_migrations: Whether to run pending migrations (default True)
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        if run_migrations:
            self._run_migrations()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a block in one local transaction.

        Commits on success, rolls back on any exception. SQLite errors are
        re-raised as LocalStoreError.
        """
        with self._lock:
            try:
                conn = self._get_connection()
            except sqlite3.Error as e:
                raise LocalStoreError(f"Cannot open local store {self.db_path}: {e}") from e
            try:
                yield conn
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise LocalStoreError(f"Local store transaction failed: {e}") from e
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

    @contextmanager
    def _use(self, conn: sqlite3.Connection | None) -> Iterator[sqlite3.Connection]:
        """Join the caller's transaction, or open a new one."""
        if conn is not None:
            yield conn
        else:
            with self.transaction() as own:
                yield own

    def _run_migrations(self) -> None:
        """Run pending schema migrations."""
        from .migrations import MigrationRunner

        with self.transaction() as conn:
            MigrationRunner(conn).run_pending()

    # === Generic record methods ===

    def get(
        self,
        record_type: RecordType,
        record_id: str,
        conn: sqlite3.Connection | None = None,
    ) -> dict[str, Any] | None:
        """Get a record by id, or None if not found."""
        spec = TABLES[RecordType(record_type)]
        with self._use(conn) as c:
            row = c.execute(f"SELECT doc FROM {spec.table} WHERE id = ?", (record_id,)).fetchone()
            return json.loads(row["doc"]) if row else None

    def list(
        self,
        record_type: RecordType,
        business_id: str | None = None,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
    ) -> list[dict[str, Any]]:
        """
        List records, optionally scoped to a business and filtered.

        Args:
            record_type: Record type to list
            business_id: Only records of this business (types scoped by business)
            filters: Equality filters on indexed fields, e.g. {"status": "DRAFT"}
            order_by: Indexed field to sort by; unordered when omitted
            descending: Sort direction for order_by

        Returns:
            List of record dicts
        """
        spec = TABLES[RecordType(record_type)]
        clauses: list[str] = []
        params: list[Any] = []

        if business_id is not None:
            if not spec.scoped_by_business:
                raise ValueError(f"{spec.table} records are not scoped by business")
            clauses.append("business_id = ?")
            params.append(business_id)

        for field_name, value in (filters or {}).items():
            clauses.append(f"{spec.column_for(field_name)} = ?")
            params.append(_column_value(value))

        sql = f"SELECT doc FROM {spec.table}"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        if order_by:
            sql += f" ORDER BY {spec.column_for(order_by)} {'DESC' if descending else 'ASC'}"

        with self.transaction() as conn:
            rows = conn.execute(sql, params).fetchall()
            return [json.loads(row["doc"]) for row in rows]

    def put(
        self,
        record_type: RecordType,
        record: dict[str, Any],
        conn: sqlite3.Connection | None = None,
    ) -> None:
        """Insert or replace a record by id."""
        spec = TABLES[RecordType(record_type)]
        with self._use(conn) as c:
            self._upsert(c, spec, record)

    def bulk_put(
        self,
        record_type: RecordType,
        records: Iterable[dict[str, Any]],
        conn: sqlite3.Connection | None = None,
    ) -> int:
        """Insert or replace many records in one transaction. Returns the count."""
        spec = TABLES[RecordType(record_type)]
        count = 0
        with self._use(conn) as c:
            for record in records:
                self._upsert(c, spec, record)
                count += 1
        return count

    def delete(
        self,
        record_type: RecordType,
        record_id: str,
        conn: sqlite3.Connection | None = None,
    ) -> bool:
        """Delete a single record. Returns True if a row was removed."""
        spec = TABLES[RecordType(record_type)]
        with self._use(conn) as c:
            cursor = c.execute(f"DELETE FROM {spec.table} WHERE id = ?", (record_id,))
            return cursor.rowcount > 0

    def _upsert(self, conn: sqlite3.Connection, spec: TableSpec, record: dict[str, Any]) -> None:
        record_id = record.get("id")
        if not record_id:
            raise LocalStoreError(f"Cannot store {spec.table} record without an id")

        columns = ["id", *spec.columns.values(), "doc"]
        values = [
            record_id,
            *(_column_value(record.get(field_name)) for field_name in spec.columns),
            json.dumps(record),
        ]
        updates = ", ".join(f"{col} = excluded.{col}" for col in columns[1:])
        conn.execute(
            f"""
            INSERT INTO {spec.table} ({", ".join(columns)})
            VALUES ({", ".join("?" for _ in columns)})
            ON CONFLICT(id) DO UPDATE SET {updates}
        """,
            values,
        )

    # === Invoice methods ===

    def save_invoice_with_items(
        self,
        invoice: dict[str, Any],
        line_items: Iterable[dict[str, Any]],
        conn: sqlite3.Connection | None = None,
    ) -> None:
        """
        Atomically replace an invoice header and its full line-item set.

        Existing line items are deleted and the given set inserted; either the
        whole write lands or none of it does.
        """
        header = {k: v for k, v in invoice.items() if k != "lineItems"}
        with self._use(conn) as c:
            self._upsert(c, TABLES[RecordType.INVOICES], header)
            self._replace_line_items(c, header["id"], line_items)

    def put_invoice_document(
        self,
        invoice: dict[str, Any],
        conn: sqlite3.Connection | None = None,
    ) -> None:
        """
        Store an invoice as returned by the server.

        A nested `lineItems` list replaces the stored set; when absent the
        existing line items are left alone.
        """
        line_items = invoice.get("lineItems")
        if line_items is None:
            self.put(RecordType.INVOICES, invoice, conn=conn)
        else:
            self.save_invoice_with_items(invoice, line_items, conn=conn)

    def _replace_line_items(
        self,
        conn: sqlite3.Connection,
        invoice_id: str,
        line_items: Iterable[dict[str, Any]],
    ) -> None:
        spec = TABLES[RecordType.INVOICE_LINE_ITEMS]
        conn.execute(f"DELETE FROM {spec.table} WHERE invoice_id = ?", (invoice_id,))
        for item in line_items:
            self._upsert(conn, spec, {**item, "invoiceId": invoice_id})

    def delete_invoice_and_items(
        self,
        invoice_id: str,
        conn: sqlite3.Connection | None = None,
    ) -> bool:
        """Atomically delete an invoice and all of its line items."""
        with self._use(conn) as c:
            c.execute("DELETE FROM invoice_line_items WHERE invoice_id = ?", (invoice_id,))
            cursor = c.execute("DELETE FROM invoices WHERE id = ?", (invoice_id,))
            return cursor.rowcount > 0

    def replace_references(
        self,
        old_id: str,
        new_id: str,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        """
        Point stored records that reference `old_id` at `new_id`.

        Rewrites invoice customers, line-item invoices and line-item products.
        Returns the number of records rewritten.
        """
        invoices = TABLES[RecordType.INVOICES]
        line_items = TABLES[RecordType.INVOICE_LINE_ITEMS]
        count = 0
        with self._use(conn) as c:
            rows = c.execute(
                "SELECT doc FROM invoices WHERE customer_id = ?", (old_id,)
            ).fetchall()
            for row in rows:
                self._upsert(c, invoices, {**json.loads(row["doc"]), "customerId": new_id})
                count += 1

            # productId is not indexed
            for row in c.execute("SELECT doc FROM invoice_line_items").fetchall():
                item = json.loads(row["doc"])
                changed = {
                    field_name: new_id
                    for field_name in ("invoiceId", "productId")
                    if item.get(field_name) == old_id
                }
                if changed:
                    self._upsert(c, line_items, {**item, **changed})
                    count += 1
        return count

    def get_line_items(self, invoice_id: str) -> list[dict[str, Any]]:
        """Get the line items of an invoice."""
        return self.list(RecordType.INVOICE_LINE_ITEMS, filters={"invoiceId": invoice_id})

    def get_invoice_with_items(self, invoice_id: str) -> dict[str, Any] | None:
        """Get an invoice with its line items under `lineItems`."""
        with self.transaction() as conn:
            invoice = self.get(RecordType.INVOICES, invoice_id, conn=conn)
            if invoice is None:
                return None
            rows = conn.execute(
                "SELECT doc FROM invoice_line_items WHERE invoice_id = ?", (invoice_id,)
            ).fetchall()
        return {**invoice, "lineItems": [json.loads(row["doc"]) for row in rows]}

    def get_invoices(self, business_id: str) -> list[dict[str, Any]]:
        """Get all invoices for a business, newest date first."""
        return self.list(RecordType.INVOICES, business_id, order_by="date", descending=True)

    # === Search helpers ===

    def search_customers(self, business_id: str, query: str | None = None) -> list[dict[str, Any]]:
        """Customers of a business whose name or phone matches the query."""
        customers = self.list(RecordType.CUSTOMERS, business_id)
        if not query:
            return customers

        lower_query = query.lower()
        return [
            c
            for c in customers
            if lower_query in (c.get("name") or "").lower() or query in (c.get("phone") or "")
        ]

    def search_products(self, business_id: str, query: str | None = None) -> list[dict[str, Any]]:
        """Products of a business whose name matches the query."""
        products = self.list(RecordType.PRODUCTS, business_id)
        if not query:
            return products

        lower_query = query.lower()
        return [p for p in products if lower_query in (p.get("name") or "").lower()]

    # === Sync metadata ===

    def get_sync_meta(self, key: str, conn: sqlite3.Connection | None = None) -> str | None:
        """Get a sync metadata value."""
        with self._use(conn) as c:
            row = c.execute("SELECT value FROM sync_meta WHERE key = ?", (key,)).fetchone()
            return row["value"] if row else None

    def set_sync_meta(self, key: str, value: str, conn: sqlite3.Connection | None = None) -> None:
        """Create or overwrite a sync metadata value."""
        with self._use(conn) as c:
            c.execute(
                """
                INSERT INTO sync_meta (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
                (key, value),
            )

    def get_last_sync_at(self) -> str | None:
        """Timestamp of the most recent successful pull, if any."""
        return self.get_sync_meta(LAST_SYNC_AT_KEY)

    # === Maintenance ===

    def get_stats(self) -> dict[str, int]:
        """Row counts per table."""
        stats: dict[str, int] = {}
        with self.transaction() as conn:
            for record_type, spec in TABLES.items():
                stats[record_type.value] = conn.execute(
                    f"SELECT COUNT(*) FROM {spec.table}"
                ).fetchone()[0]
        return stats

    def reset(self) -> None:
        """Remove all local data (logout). Schema is kept."""
        with self.transaction() as conn:
            for spec in TABLES.values():
                conn.execute(f"DELETE FROM {spec.table}")
            conn.execute("DELETE FROM sync_meta")
            conn.execute("DELETE FROM outbox")
            conn.execute("DELETE FROM drafts")
        logger.info("Local store reset: %s", self.db_path)
