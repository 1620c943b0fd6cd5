"""Domain mutations: optimistic local write plus outbox entry, in one transaction."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from invoice_sync.local_store import RecordType
from invoice_sync.outbox import MutationType

if TYPE_CHECKING:
    from invoice_sync.local_store import LocalStore
    from invoice_sync.outbox import Outbox
    from invoice_sync.services.sync_engine import SyncEngine

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class MutationService:
    """
    Entry point for local writes that must reach the remote.

    Each save lands in the local store and the outbox atomically, then asks
    the sync engine (if any) for a cycle shortly afterwards.
    """

    def __init__(
        self,
        store: LocalStore,
        outbox: Outbox,
        engine: SyncEngine | None = None,
    ):
        self.store = store
        self.outbox = outbox
        self.engine = engine

    def save_invoice(
        self,
        invoice: dict[str, Any],
        line_items: list[dict[str, Any]],
    ) -> str:
        """
        Save an invoice with its complete line-item set.

        Missing ids are generated client-side. Returns the idempotency key
        of the queued CREATE_INVOICE / UPDATE_INVOICE mutation.
        """
        now = _now_iso()
        header = {k: v for k, v in invoice.items() if k != "lineItems"}
        header["id"] = header.get("id") or str(uuid.uuid4())
        header["updatedAt"] = now
        items = [
            {**item, "id": item.get("id") or str(uuid.uuid4()), "invoiceId": header["id"]}
            for item in line_items
        ]

        with self.store.transaction() as conn:
            is_new = self.store.get(RecordType.INVOICES, header["id"], conn=conn) is None
            if is_new:
                header.setdefault("createdAt", now)
            self.store.save_invoice_with_items(header, items, conn=conn)
            key = self.outbox.enqueue(
                MutationType.CREATE_INVOICE if is_new else MutationType.UPDATE_INVOICE,
                {**header, "lineItems": items},
                conn=conn,
            )

        logger.info("Saved invoice %s with %d line items", header["id"], len(items))
        self._request_sync()
        return key

    def save_customer(self, customer: dict[str, Any]) -> str:
        """Save a customer and queue CREATE_CUSTOMER / UPDATE_CUSTOMER."""
        return self._save_record(
            RecordType.CUSTOMERS,
            customer,
            MutationType.CREATE_CUSTOMER,
            MutationType.UPDATE_CUSTOMER,
        )

    def save_product(self, product: dict[str, Any]) -> str:
        """Save a product and queue CREATE_PRODUCT / UPDATE_PRODUCT."""
        return self._save_record(
            RecordType.PRODUCTS,
            product,
            MutationType.CREATE_PRODUCT,
            MutationType.UPDATE_PRODUCT,
        )

    def _save_record(
        self,
        record_type: RecordType,
        record: dict[str, Any],
        create_type: MutationType,
        update_type: MutationType,
    ) -> str:
        now = _now_iso()
        record = {**record, "updatedAt": now}
        record["id"] = record.get("id") or str(uuid.uuid4())

        with self.store.transaction() as conn:
            is_new = self.store.get(record_type, record["id"], conn=conn) is None
            if is_new:
                record.setdefault("createdAt", now)
            self.store.put(record_type, record, conn=conn)
            key = self.outbox.enqueue(create_type if is_new else update_type, record, conn=conn)

        logger.info("Saved %s record %s", record_type.value, record["id"])
        self._request_sync()
        return key

    def _request_sync(self) -> None:
        if self.engine is not None:
            self.engine.schedule_sync()
