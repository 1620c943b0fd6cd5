"""
Wire format of the sync API.

POST /sync/batch
    request  {"mutations": [{"id", "type", "idempotencyKey", "data"}]}
    response {"data": [{"id", "status": "success"|"error", "data"?, "error"?}]}

GET /sync/delta?lastSyncAt=<ISO8601> and GET /sync/full
    response {"data": {"invoices"?, "customers"?, "products"?, "business"?, "syncedAt"}}

Parsing is strict: anything that does not match raises WireFormatError.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


class WireFormatError(ValueError):
    """A sync API payload did not have the expected shape."""

    pass


STATUS_SUCCESS = "success"
STATUS_ERROR = "error"


@dataclass
class MutationRequest:
    """One mutation in a /sync/batch request."""

    id: str
    type: str
    idempotency_key: str
    data: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "idempotencyKey": self.idempotency_key,
            "data": self.data,
        }


@dataclass
class MutationResult:
    """Per-mutation result in a /sync/batch response."""

    id: str
    status: str
    data: dict[str, Any] | None = None
    error: str | None = None
    cached: bool = False  # Remote replayed a stored response for a known key

    @property
    def is_success(self) -> bool:
        return self.status == STATUS_SUCCESS

    @classmethod
    def from_dict(cls, raw: Any) -> MutationResult:
        if not isinstance(raw, dict):
            raise WireFormatError(f"Mutation result must be an object, got {type(raw).__name__}")

        result_id = raw.get("id")
        if result_id is None:
            raise WireFormatError("Mutation result is missing 'id'")

        status = raw.get("status")
        if status not in (STATUS_SUCCESS, STATUS_ERROR):
            raise WireFormatError(f"Unknown mutation result status: {status!r}")

        data = raw.get("data")
        if data is not None and not isinstance(data, dict):
            raise WireFormatError(f"Mutation result data for {result_id} must be an object")

        return cls(
            id=str(result_id),
            status=status,
            data=data,
            error=raw.get("error"),
            cached=bool(raw.get("cached", False)),
        )


@dataclass
class PullChanges:
    """Authoritative records returned by a delta or full pull."""

    synced_at: str
    invoices: list[dict[str, Any]] = field(default_factory=list)
    customers: list[dict[str, Any]] = field(default_factory=list)
    products: list[dict[str, Any]] = field(default_factory=list)
    business: dict[str, Any] | None = None

    @property
    def record_count(self) -> int:
        return len(self.invoices) + len(self.customers) + len(self.products)

    @classmethod
    def from_dict(cls, raw: Any) -> PullChanges:
        if not isinstance(raw, dict):
            raise WireFormatError("Pull response data must be an object")

        synced_at = raw.get("syncedAt")
        if not isinstance(synced_at, str) or not _is_iso_timestamp(synced_at):
            raise WireFormatError(f"Pull response has invalid 'syncedAt': {synced_at!r}")

        business = raw.get("business")
        if business is not None and not isinstance(business, dict):
            raise WireFormatError("Pull response 'business' must be an object")

        return cls(
            synced_at=synced_at,
            invoices=_record_list(raw, "invoices"),
            customers=_record_list(raw, "customers"),
            products=_record_list(raw, "products"),
            business=business,
        )


def _record_list(raw: dict[str, Any], key: str) -> list[dict[str, Any]]:
    records = raw.get(key)
    if records is None:
        return []
    if not isinstance(records, list):
        raise WireFormatError(f"Pull response '{key}' must be a list")
    for record in records:
        if not isinstance(record, dict) or not record.get("id"):
            raise WireFormatError(f"Pull response '{key}' contains a record without an id")
    return records


def _is_iso_timestamp(value: str) -> bool:
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return False
    return True


def parse_batch_response(body: Any) -> list[MutationResult]:
    """Parse a /sync/batch response body."""
    if not isinstance(body, dict) or not isinstance(body.get("data"), list):
        raise WireFormatError("Batch response must be an object with a 'data' list")
    return [MutationResult.from_dict(item) for item in body["data"]]


def parse_pull_response(body: Any) -> PullChanges:
    """Parse a /sync/delta or /sync/full response body."""
    if not isinstance(body, dict) or "data" not in body:
        raise WireFormatError("Pull response must be an object with 'data'")
    return PullChanges.from_dict(body["data"])
