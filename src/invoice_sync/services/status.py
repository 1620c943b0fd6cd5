"""Sync status: engine state snapshot, observer fan-out, and UI-facing projection."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING

from invoice_sync.local_store import LocalStoreError

if TYPE_CHECKING:
    from invoice_sync.outbox import Outbox
    from invoice_sync.services.scheduler import Scheduler, TimerHandle
    from invoice_sync.services.sync_engine import SyncEngine

logger = logging.getLogger(__name__)


class EngineState(str, Enum):
    """Sync engine states. ERROR is reported once, then the engine is IDLE again."""

    IDLE = "IDLE"
    SYNCING = "SYNCING"
    ERROR = "ERROR"


@dataclass(frozen=True)
class SyncStatus:
    """Immutable snapshot of sync state."""

    state: EngineState = EngineState.IDLE
    is_online: bool = False
    is_syncing: bool = False
    last_sync_at: str | None = None
    pending_count: int = 0
    failed_count: int = 0
    last_error: str | None = None

    @property
    def has_failures(self) -> bool:
        """True when some changes need manual intervention."""
        return self.failed_count > 0


StatusListener = Callable[[SyncStatus], None]


class StatusPublisher:
    """
    Ordered, synchronous fan-out of status snapshots.

    Listeners are called in subscription order on the publishing thread, so
    a slow listener delays the publisher. A listener that raises is logged
    and skipped; it never stops delivery to the others.
    """

    def __init__(self) -> None:
        self._listeners: list[StatusListener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Register a listener. Returns a function that unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def publish(self, status: SyncStatus) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(status)
            except Exception:
                logger.exception("Status listener %r failed", listener)

    def __len__(self) -> int:
        return len(self._listeners)


class SyncStatusStore:
    """
    Observable projection of engine status for indicators.

    Mirrors every engine notification and refreshes the pending/failed
    counts on a poll interval, since UI writes change them between cycles.
    """

    def __init__(
        self,
        engine: SyncEngine,
        outbox: Outbox,
        scheduler: Scheduler,
        poll_seconds: float = 5.0,
    ):
        self.engine = engine
        self.outbox = outbox
        self.scheduler = scheduler
        self.poll_seconds = poll_seconds
        self._publisher = StatusPublisher()
        self._status = engine.status
        # Serializes status updates; _generation counts engine notifications
        self._lock = threading.RLock()
        self._generation = 0
        self._unsubscribe: Callable[[], None] | None = None
        self._poll: TimerHandle | None = None

    @property
    def status(self) -> SyncStatus:
        return self._status

    def init(self) -> None:
        """Attach to the engine and start polling the outbox counts."""
        if self._unsubscribe is not None:
            return
        self._unsubscribe = self.engine.subscribe(self._on_engine_status)
        self._poll = self.scheduler.call_every(self.poll_seconds, self.refresh_counts)
        self.refresh_counts()

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._poll is not None:
            self._poll.cancel()
            self._poll = None

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        return self._publisher.subscribe(listener)

    def _on_engine_status(self, status: SyncStatus) -> None:
        with self._lock:
            self._generation += 1
            self._set(status)

    def refresh_counts(self) -> None:
        """
        Re-read pending and failed counts from the outbox.

        Counts read before an engine notification that lands mid-refresh are
        stale and are dropped; the notification already carries fresher ones.
        """
        generation = self._generation
        try:
            pending = self.outbox.pending_count()
            failed = self.outbox.failed_count()
        except LocalStoreError as e:
            logger.warning("Could not refresh outbox counts: %s", e)
            return
        with self._lock:
            if generation != self._generation:
                return
            current = self._status
            if (pending, failed) != (current.pending_count, current.failed_count):
                self._set(replace(current, pending_count=pending, failed_count=failed))

    def _set(self, status: SyncStatus) -> None:
        with self._lock:
            self._status = status
            self._publisher.publish(status)

    def trigger_sync(self) -> None:
        """Manual "sync now"."""
        self.engine.sync()

    def indicator(self) -> str:
        """Short status line for a sync indicator."""
        return describe_status(self._status)


def describe_status(status: SyncStatus) -> str:
    """Human-readable one-line summary of a status snapshot."""
    if not status.is_online:
        if status.pending_count > 0:
            return f"Offline • {status.pending_count} pending"
        return "Offline"
    if status.is_syncing:
        return "Syncing..."
    if status.failed_count > 0:
        return f"{status.failed_count} changes could not sync"
    if status.pending_count > 0:
        return f"{status.pending_count} changes pending sync"
    if status.last_sync_at:
        return f"Synced (last sync {status.last_sync_at})"
    return "Not synced yet"
