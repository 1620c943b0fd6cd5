"""
Remote sync API client.

Provides:
- Batch push of outbox mutations (POST /sync/batch)
- Delta and full pulls (GET /sync/delta, GET /sync/full)

Transport failures, error statuses and malformed bodies each raise a
distinct SyncClientError subclass.
"""

from .client import (
    SyncAPIError,
    SyncClient,
    SyncClientError,
    SyncConnectionError,
    SyncResponseError,
)

__all__ = [
    "SyncClient",
    "SyncClientError",
    "SyncAPIError",
    "SyncConnectionError",
    "SyncResponseError",
]
