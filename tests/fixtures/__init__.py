"""
In-memory stand-in for the remote sync API.

FakeRemote implements the SyncClient surface used by the engine
(push_batch, get_delta, get_full) with server-side behaviour close enough to
the real one: idempotency-key deduplication, server-assigned invoice numbers,
and delta pulls keyed by the syncedAt it handed out.
"""

from __future__ import annotations

import copy
import itertools
from collections.abc import Callable
from typing import Any

from invoice_sync.schemas.wire import MutationRequest, MutationResult, PullChanges

_COLLECTIONS = {
    "INVOICE": "invoices",
    "CUSTOMER": "customers",
    "PRODUCT": "products",
}


def make_invoice(
    invoice_id: str = "inv-1",
    business_id: str = "biz-1",
    n_items: int = 2,
    **fields: Any,
) -> tuple[dict[str, Any], list[dict[str, Any]]]:
    """Build an invoice header and its line items."""
    invoice = {
        "id": invoice_id,
        "businessId": business_id,
        "invoiceNumber": "",
        "customerId": "cust-1",
        "status": "DRAFT",
        "date": "2024-06-01",
        "notes": "",
        **fields,
    }
    items = [
        {
            "id": f"{invoice_id}-item-{i}",
            "invoiceId": invoice_id,
            "name": f"Item {i}",
            "quantity": i + 1,
            "rate": 100.0 * (i + 1),
        }
        for i in range(n_items)
    ]
    return invoice, items


class FakeRemote:
    """Authoritative server double with call recording and failure injection."""

    def __init__(self) -> None:
        self.records: dict[str, dict[str, dict[str, Any]]] = {
            "invoices": {},
            "customers": {},
            "products": {},
        }
        self.batches: list[list[MutationRequest]] = []
        self.pulls: list[tuple[str, str | None]] = []
        self.business: dict[str, Any] | None = None  # Returned by full pulls only

        # Failure injection
        self.reject_types: set[str] = set()
        self.push_error: Exception | None = None
        self.pull_error: Exception | None = None
        self.on_push: Callable[[list[MutationRequest]], None] | None = None
        self.assign_ids: bool = False

        self._idempotency: dict[str, dict[str, Any]] = {}
        self._seq = itertools.count(1)
        self._record_seq: dict[tuple[str, str], int] = {}
        self._issued: dict[str, int] = {}
        self._sync_counter = itertools.count(1)
        self._invoice_counter = itertools.count(1)

    # === Server-side helpers ===

    def store(self, collection: str, record: dict[str, Any]) -> None:
        """Create or replace a record as if edited on another device."""
        self.records[collection][record["id"]] = copy.deepcopy(record)
        self._record_seq[(collection, record["id"])] = next(self._seq)

    @property
    def created_invoice_count(self) -> int:
        return len(self.records["invoices"])

    # === SyncClient surface ===

    def push_batch(self, mutations: list[MutationRequest]) -> list[MutationResult]:
        self.batches.append(list(mutations))
        if self.on_push is not None:
            self.on_push(mutations)
        if self.push_error is not None:
            raise self.push_error

        results = []
        for mutation in mutations:
            if mutation.idempotency_key in self._idempotency:
                results.append(
                    MutationResult(
                        id=mutation.id,
                        status="success",
                        data=copy.deepcopy(self._idempotency[mutation.idempotency_key]),
                        cached=True,
                    )
                )
                continue
            if mutation.type in self.reject_types:
                results.append(
                    MutationResult(id=mutation.id, status="error", error="Rejected by server")
                )
                continue

            data = self._apply(mutation)
            self._idempotency[mutation.idempotency_key] = copy.deepcopy(data)
            results.append(MutationResult(id=mutation.id, status="success", data=data))
        return results

    def _apply(self, mutation: MutationRequest) -> dict[str, Any]:
        action, _, kind = mutation.type.partition("_")
        collection = _COLLECTIONS[kind]
        data = copy.deepcopy(mutation.data)

        if action == "CREATE" and self.assign_ids:
            data["id"] = f"srv-{data['id']}"
            for item in data.get("lineItems", []):
                item["invoiceId"] = data["id"]
        if kind == "INVOICE" and not data.get("invoiceNumber"):
            data["invoiceNumber"] = f"INV-{next(self._invoice_counter):04d}"

        self.store(collection, data)
        return copy.deepcopy(data)

    def get_full(self) -> PullChanges:
        self.pulls.append(("full", None))
        changes = self._changes_since(0)
        changes.business = copy.deepcopy(self.business)
        return changes

    def get_delta(self, last_sync_at: str) -> PullChanges:
        self.pulls.append(("delta", last_sync_at))
        return self._changes_since(self._issued.get(last_sync_at, 0))

    def _changes_since(self, seq: int) -> PullChanges:
        if self.pull_error is not None:
            raise self.pull_error

        changed = {
            collection: [
                copy.deepcopy(record)
                for record_id, record in records.items()
                if self._record_seq[(collection, record_id)] > seq
            ]
            for collection, records in self.records.items()
        }
        synced_at = f"2024-06-01T12:00:{next(self._sync_counter):02d}Z"
        self._issued[synced_at] = next(self._seq)
        return PullChanges(synced_at=synced_at, **changed)
