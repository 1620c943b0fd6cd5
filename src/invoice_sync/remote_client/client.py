"""
Sync API client implementation.
"""

import json
import logging
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..schemas.wire import (
    MutationRequest,
    MutationResult,
    PullChanges,
    WireFormatError,
    parse_batch_response,
    parse_pull_response,
)

logger = logging.getLogger(__name__)


class SyncClientError(Exception):
    """Base exception for sync client errors."""

    pass


class SyncConnectionError(SyncClientError):
    """Failed to reach the remote (connection refused, DNS, timeout)."""

    pass


class SyncAPIError(SyncClientError):
    """API returned an error response."""

    def __init__(self, status_code: int, message: str, response_body: str | None = None):
        self.status_code = status_code
        self.message = message
        self.response_body = response_body
        super().__init__(f"Sync API error {status_code}: {message}")


class SyncResponseError(SyncClientError):
    """API answered 2xx but the body was malformed or unexpected."""

    pass


class SyncClient:
    """
    Client for the remote sync API.

    Features:
    - Batch push of outbox mutations (POST /sync/batch)
    - Delta pull since a timestamp (GET /sync/delta)
    - Full snapshot pull (GET /sync/full)
    - Automatic retry with backoff on 429/5xx

    Mutations carry idempotency keys, so retrying a POST is safe.
    """

    DEFAULT_TIMEOUT = 30

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = 3,
        backoff_factor: float = 0.5,
    ):
        """
        Initialize sync client.

        Args:
            base_url: API root (e.g., "https://invoices.example.com/api")
            token: Bearer token for the signed-in session
            timeout: Request timeout in seconds
            max_retries: Maximum transport retry attempts (0 disables)
            backoff_factor: Backoff factor for retries
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

        self.session = requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {token}",
                "Accept": "application/json",
                "Content-Type": "application/json",
            }
        )

        if max_retries > 0:
            retry_strategy = Retry(
                total=max_retries,
                backoff_factor=backoff_factor,
                status_forcelist=[429, 500, 502, 503, 504],
                allowed_methods=["GET", "POST"],
            )
            adapter = HTTPAdapter(max_retries=retry_strategy)
            self.session.mount("http://", adapter)
            self.session.mount("https://", adapter)

    @classmethod
    def from_config(cls, remote_config: Any) -> "SyncClient":
        """Build a client from a RemoteConfig."""
        return cls(
            base_url=remote_config.base_url,
            token=remote_config.token,
            timeout=remote_config.timeout_seconds,
            max_retries=remote_config.max_retries,
            backoff_factor=remote_config.backoff_factor,
        )

    def _request(
        self,
        method: str,
        endpoint: str,
        params: dict | None = None,
        json_data: dict | None = None,
    ) -> Any:
        """Make an API request and return the decoded JSON body."""
        url = f"{self.base_url}{endpoint}"

        logger.debug("API Request: %s %s", method, url)
        if json_data:
            logger.debug("Request body: %s", json.dumps(json_data)[:2000])

        try:
            response = self.session.request(
                method=method,
                url=url,
                params=params,
                json=json_data,
                timeout=self.timeout,
            )
        except requests.exceptions.ConnectionError as e:
            logger.warning("Connection error to %s: %s", url, e)
            raise SyncConnectionError(f"Failed to connect to {self.base_url}: {e}") from e
        except requests.exceptions.Timeout as e:
            logger.warning("Timeout for %s: %s", url, e)
            raise SyncConnectionError(f"Request to {url} timed out: {e}") from e
        except requests.exceptions.RetryError as e:
            logger.warning("Retries exhausted for %s: %s", url, e)
            raise SyncConnectionError(f"Gave up on {url} after retries: {e}") from e
        except requests.exceptions.RequestException as e:
            logger.error("Request error for %s: %s", url, e)
            raise SyncClientError(f"Request failed: {e}") from e

        logger.debug("Response status: %s", response.status_code)

        if not response.ok:
            try:
                message = response.json().get("error") or response.reason
            except Exception:
                message = response.reason

            logger.error("API Error %s: %s", response.status_code, message)
            raise SyncAPIError(
                status_code=response.status_code,
                message=str(message),
                response_body=response.text,
            )

        try:
            return response.json()
        except ValueError as e:
            raise SyncResponseError(f"Invalid JSON from {url}: {e}") from e

    def push_batch(self, mutations: list[MutationRequest]) -> list[MutationResult]:
        """
        Send a batch of mutations.

        Returns:
            One result per mutation the remote acknowledged, in response order
        """
        body = self._request(
            "POST",
            "/sync/batch",
            json_data={"mutations": [m.to_dict() for m in mutations]},
        )
        try:
            return parse_batch_response(body)
        except WireFormatError as e:
            raise SyncResponseError(f"Malformed batch response: {e}") from e

    def get_delta(self, last_sync_at: str) -> PullChanges:
        """Fetch records changed since last_sync_at."""
        body = self._request("GET", "/sync/delta", params={"lastSyncAt": last_sync_at})
        return self._parse_pull(body)

    def get_full(self) -> PullChanges:
        """Fetch a full snapshot (first sync)."""
        body = self._request("GET", "/sync/full")
        return self._parse_pull(body)

    def _parse_pull(self, body: Any) -> PullChanges:
        try:
            return parse_pull_response(body)
        except WireFormatError as e:
            raise SyncResponseError(f"Malformed pull response: {e}") from e
