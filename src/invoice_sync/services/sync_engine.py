"""Sync engine: pushes the outbox to the remote, then pulls authoritative changes.

One cycle at a time, push strictly before pull. Cycles are started by a
connectivity change, the periodic timer, a recent local mutation, or a manual
request. Any error is caught at the cycle boundary and reported as a
transient ERROR status; nothing escapes into timer or event callbacks.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from invoice_sync.config import SyncConfig
from invoice_sync.local_store import LAST_SYNC_AT_KEY, LocalStoreError, RecordType
from invoice_sync.outbox import MutationType, OutboxEntry
from invoice_sync.remote_client import SyncClientError
from invoice_sync.schemas.wire import MutationRequest, MutationResult, PullChanges
from invoice_sync.services.status import EngineState, StatusListener, StatusPublisher, SyncStatus

if TYPE_CHECKING:
    from invoice_sync.local_store import LocalStore
    from invoice_sync.outbox import Outbox
    from invoice_sync.remote_client import SyncClient
    from invoice_sync.services.scheduler import Scheduler, TimerHandle

logger = logging.getLogger(__name__)

# Local record type refreshed from the server's answer to each mutation kind
MUTATION_RECORD_TYPES: dict[str, RecordType] = {
    MutationType.CREATE_INVOICE.value: RecordType.INVOICES,
    MutationType.UPDATE_INVOICE.value: RecordType.INVOICES,
    MutationType.CREATE_CUSTOMER.value: RecordType.CUSTOMERS,
    MutationType.UPDATE_CUSTOMER.value: RecordType.CUSTOMERS,
    MutationType.CREATE_PRODUCT.value: RecordType.PRODUCTS,
    MutationType.UPDATE_PRODUCT.value: RecordType.PRODUCTS,
}


@dataclass
class SyncResult:
    """Result of one sync cycle."""

    pushed: int = 0  # Entries sent in the batch
    synced: int = 0  # Entries acknowledged with success
    retried: int = 0  # Entries left pending after an error
    failed: int = 0  # Entries that hit the retry ceiling this cycle
    pulled: int = 0  # Records applied from the pull
    full_sync: bool = False
    synced_at: str | None = None
    duration_ms: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        """Return True if the cycle completed without errors."""
        return len(self.errors) == 0


class SyncEngine:
    """
    Offline-first sync orchestrator.

    Holds its own state (online flag, cycle state, last sync time, subscribers)
    and is driven by an injected scheduler. Create one per local store; call
    start() to arm the periodic timer and stop() to disarm it.
    """

    def __init__(
        self,
        store: LocalStore,
        outbox: Outbox,
        client: SyncClient,
        scheduler: Scheduler,
        config: SyncConfig | None = None,
        is_online: bool = False,
    ) -> None:
        """Initialize the sync engine.

        Args:
            store: Local store holding domain records and sync metadata.
            outbox: Queue of pending mutations.
            client: Remote sync API client.
            scheduler: Timer source (wall clock or virtual).
            config: Timing and retry settings.
            is_online: Initial connectivity.
        """
        self.store = store
        self.outbox = outbox
        self.client = client
        self.scheduler = scheduler
        self.config = config or SyncConfig()

        self._publisher = StatusPublisher()
        self._cycle_lock = threading.Lock()
        self._state = EngineState.IDLE
        self._is_online = is_online
        self._running = False
        self._last_sync_at = store.get_last_sync_at()
        self._last_cycle_started: float | None = None
        self._last_error: str | None = None
        self._counts = (0, 0)
        self._periodic: TimerHandle | None = None
        self._deferred: TimerHandle | None = None

    # === Lifecycle ===

    def start(self) -> None:
        """Arm the periodic timer and run an initial cycle when online."""
        if self._running:
            return
        self._running = True
        self._periodic = self.scheduler.call_every(self.config.interval_seconds, self._on_timer)
        logger.info("Sync engine started (interval=%ss)", self.config.interval_seconds)
        if self._is_online:
            self._run_cycle_safely()

    def stop(self) -> None:
        """Cancel all timers. An in-flight cycle finishes on its own."""
        self._running = False
        for handle in (self._periodic, self._deferred):
            if handle is not None:
                handle.cancel()
        self._periodic = None
        self._deferred = None
        logger.info("Sync engine stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    # === Observers ===

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Register a status listener. Returns an unsubscribe function."""
        return self._publisher.subscribe(listener)

    @property
    def status(self) -> SyncStatus:
        """Current status snapshot."""
        try:
            self._counts = (self.outbox.pending_count(), self.outbox.failed_count())
        except LocalStoreError as e:
            logger.warning("Could not read outbox counts: %s", e)
        pending, failed = self._counts
        return SyncStatus(
            state=self._state,
            is_online=self._is_online,
            is_syncing=self._state is EngineState.SYNCING,
            last_sync_at=self._last_sync_at,
            pending_count=pending,
            failed_count=failed,
            last_error=self._last_error if self._state is EngineState.ERROR else None,
        )

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def is_online(self) -> bool:
        return self._is_online

    @property
    def last_sync_at(self) -> str | None:
        return self._last_sync_at

    def _notify(self) -> None:
        self._publisher.publish(self.status)

    # === Triggers ===

    def set_online(self, online: bool) -> None:
        """Connectivity signal. Going online may start a cycle; offline never aborts one."""
        if online == self._is_online:
            return
        self._is_online = online
        logger.info("Connectivity changed: %s", "online" if online else "offline")
        self._notify()

        if online and self._running and self._outside_debounce_window():
            self._run_cycle_safely()

    def _outside_debounce_window(self) -> bool:
        if self._last_cycle_started is None:
            return True
        elapsed = self.scheduler.now() - self._last_cycle_started
        return elapsed >= self.config.online_debounce_seconds

    def _on_timer(self) -> None:
        if self._is_online and self._state is EngineState.IDLE:
            self._run_cycle_safely()

    def schedule_sync(self, delay: float | None = None) -> None:
        """Request a cycle after a short delay (e.g. after a local mutation)."""
        if not (self._running and self._is_online):
            return
        if self._deferred is not None:
            self._deferred.cancel()
        if delay is None:
            delay = self.config.mutation_sync_delay_seconds
        self._deferred = self.scheduler.call_later(delay, self._run_cycle_safely)

    def _run_cycle_safely(self) -> None:
        try:
            self.sync()
        except Exception:
            logger.exception("Unexpected error outside the sync cycle")

    # === Cycle ===

    def sync(self) -> SyncResult | None:
        """
        Run one push-then-pull cycle.

        Returns:
            SyncResult, or None when offline or a cycle is already running
        """
        if not self._is_online:
            logger.debug("Sync skipped: offline")
            return None
        if not self._cycle_lock.acquire(blocking=False):
            logger.debug("Sync skipped: cycle already in progress")
            return None

        start_time = self.scheduler.now()
        result = SyncResult()
        try:
            self._state = EngineState.SYNCING
            self._last_cycle_started = start_time
            self._last_error = None
            self._notify()

            try:
                self._push(result)
                self._pull(result)
            except (SyncClientError, LocalStoreError) as e:
                logger.warning("Sync cycle failed: %s", e)
                self._fail_cycle(result, e)
            except Exception as e:
                logger.exception("Sync cycle failed unexpectedly")
                self._fail_cycle(result, e)
        finally:
            result.duration_ms = int((self.scheduler.now() - start_time) * 1000)
            self._state = EngineState.IDLE
            self._cycle_lock.release()
            self._notify()

        logger.info(
            "Sync completed: %d pushed, %d synced, %d retried, %d failed, %d pulled (%s), "
            "%d errors in %dms",
            result.pushed,
            result.synced,
            result.retried,
            result.failed,
            result.pulled,
            "full" if result.full_sync else "delta",
            len(result.errors),
            result.duration_ms,
        )
        return result

    def _fail_cycle(self, result: SyncResult, error: Exception) -> None:
        result.errors.append(str(error))
        self._last_error = str(error)
        self._state = EngineState.ERROR
        self._notify()

    # === Push ===

    def _push(self, result: SyncResult) -> None:
        """Send all pending entries in one batch and apply each entry's own result."""
        entries = self.outbox.pending_entries()
        if not entries:
            return

        result.pushed = len(entries)
        logger.info("Pushing %d outbox entries", len(entries))
        mutations = [
            MutationRequest(
                id=str(entry.id),
                type=entry.type,
                idempotency_key=entry.idempotency_key,
                data=entry.data,
            )
            for entry in entries
        ]

        try:
            results = self.client.push_batch(mutations)
        except SyncClientError as e:
            for entry in entries:
                self._record_push_error(entry, str(e), result)
            raise

        by_id = {str(entry.id): entry for entry in entries}
        seen: set[str] = set()
        for item in results:
            entry = by_id.get(item.id)
            if entry is None or item.id in seen:
                logger.warning("Ignoring unexpected batch result for id %s", item.id)
                continue
            seen.add(item.id)

            if item.is_success:
                self._apply_push_success(entry, item)
                result.synced += 1
            else:
                self._record_push_error(entry, item.error or "Unknown error", result)

        missing = sorted(set(by_id) - seen, key=int)
        if missing:
            logger.warning("No result for outbox entries %s; left pending", ", ".join(missing))

    def _record_push_error(self, entry: OutboxEntry, error: str, result: SyncResult) -> None:
        retry_count = self.outbox.increment_retry(entry.id, error)
        if retry_count >= self.config.max_retry_attempts:
            self.outbox.mark_failed(entry.id, error)
            result.failed += 1
        else:
            logger.info(
                "Outbox entry #%d failed (attempt %d/%d): %s",
                entry.id,
                retry_count,
                self.config.max_retry_attempts,
                error,
            )
            result.retried += 1

    def _apply_push_success(self, entry: OutboxEntry, item: MutationResult) -> None:
        """Mark the entry synced and store the server's version, in one transaction."""
        with self.store.transaction() as conn:
            self.outbox.mark_synced(entry.id, conn=conn)
            if item.data:
                self._apply_server_record(entry, item.data, conn)

    def _apply_server_record(
        self,
        entry: OutboxEntry,
        data: dict[str, Any],
        conn: sqlite3.Connection,
    ) -> None:
        record_type = MUTATION_RECORD_TYPES.get(entry.type)
        if record_type is None:
            logger.debug("No local record type for mutation %s", entry.type)
            return

        placeholder_id = entry.data.get("id")
        if not data.get("id"):
            data = {**data, "id": placeholder_id}
        elif placeholder_id and data["id"] != placeholder_id:
            # Server assigned its own id; move references off the client placeholder
            self.store.replace_references(placeholder_id, data["id"], conn=conn)
            self.outbox.remap_record_id(placeholder_id, data["id"], conn=conn)
            self.store.delete(record_type, placeholder_id, conn=conn)
            logger.info(
                "Replaced placeholder %s id %s with server id %s",
                record_type.value,
                placeholder_id,
                data["id"],
            )

        if record_type is RecordType.INVOICES:
            self.store.put_invoice_document(data, conn=conn)
        else:
            self.store.put(record_type, data, conn=conn)

    # === Pull ===

    def _pull(self, result: SyncResult) -> None:
        """Fetch changes and apply them, plus the new lastSyncAt, atomically."""
        last_sync_at = self.store.get_last_sync_at()
        if last_sync_at:
            changes = self.client.get_delta(last_sync_at)
        else:
            result.full_sync = True
            changes = self.client.get_full()

        self._apply_changes(changes)
        self._last_sync_at = changes.synced_at
        result.pulled = changes.record_count
        result.synced_at = changes.synced_at

    def _apply_changes(self, changes: PullChanges) -> None:
        with self.store.transaction() as conn:
            for invoice in changes.invoices:
                self.store.put_invoice_document(invoice, conn=conn)
            self.store.bulk_put(RecordType.CUSTOMERS, changes.customers, conn=conn)
            self.store.bulk_put(RecordType.PRODUCTS, changes.products, conn=conn)
            if changes.business:
                self.store.put(RecordType.BUSINESS_SETTINGS, changes.business, conn=conn)
            self.store.set_sync_meta(LAST_SYNC_AT_KEY, changes.synced_at, conn=conn)
