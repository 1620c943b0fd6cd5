"""
Timer scheduling used by the sync engine, draft autosave and status polling.

Components never call time.sleep or threading.Timer directly; they receive a
Scheduler. ThreadingScheduler runs on wall-clock time, VirtualScheduler runs
only when advance() is called.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable

logger = logging.getLogger(__name__)


class TimerHandle(ABC):
    """A scheduled one-shot or periodic callback."""

    @abstractmethod
    def cancel(self) -> None:
        """Stop the callback from firing again. Safe to call twice."""

    @property
    @abstractmethod
    def cancelled(self) -> bool: ...


class Scheduler(ABC):
    """Source of time and timers."""

    @abstractmethod
    def now(self) -> float:
        """Monotonic time in seconds."""

    @abstractmethod
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """Run callback once after delay seconds."""

    @abstractmethod
    def call_every(self, interval: float, callback: Callable[[], None]) -> TimerHandle:
        """Run callback every interval seconds until cancelled."""


# === Wall-clock implementation ===


class _ThreadTimer(TimerHandle):
    def __init__(self, delay: float, callback: Callable[[], None], repeat: bool):
        self._delay = delay
        self._callback = callback
        self._repeat = repeat
        self._lock = threading.Lock()
        self._cancelled = False
        self._timer: threading.Timer | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def start(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._timer = threading.Timer(self._delay, self._fire)
            self._timer.daemon = True
            self._timer.start()

    def _fire(self) -> None:
        if self._cancelled:
            return
        try:
            self._callback()
        except Exception:
            logger.exception("Scheduled callback failed")
        if self._repeat:
            self.start()

    def cancel(self) -> None:
        with self._lock:
            self._cancelled = True
            if self._timer is not None:
                self._timer.cancel()


class ThreadingScheduler(Scheduler):
    """Scheduler backed by daemon threading.Timer threads."""

    def now(self) -> float:
        return time.monotonic()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        timer = _ThreadTimer(delay, callback, repeat=False)
        timer.start()
        return timer

    def call_every(self, interval: float, callback: Callable[[], None]) -> TimerHandle:
        timer = _ThreadTimer(interval, callback, repeat=True)
        timer.start()
        return timer


# === Virtual-time implementation ===


class _VirtualTimer(TimerHandle):
    def __init__(self, due: float, callback: Callable[[], None], interval: float | None):
        self.due = due
        self.callback = callback
        self.interval = interval
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True


class VirtualScheduler(Scheduler):
    """
    Deterministic scheduler: time only moves when advance() is called.

    Callbacks due at the same instant fire in the order they were scheduled.
    Exceptions raised by callbacks propagate out of advance().
    """

    def __init__(self, start: float = 0.0):
        self._now = start
        self._seq = itertools.count()
        self._queue: list[tuple[float, int, _VirtualTimer]] = []

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return self._push(_VirtualTimer(self._now + delay, callback, None))

    def call_every(self, interval: float, callback: Callable[[], None]) -> TimerHandle:
        if interval <= 0:
            raise ValueError("interval must be positive")
        return self._push(_VirtualTimer(self._now + interval, callback, interval))

    def _push(self, timer: _VirtualTimer) -> _VirtualTimer:
        heapq.heappush(self._queue, (timer.due, next(self._seq), timer))
        return timer

    @property
    def pending_timers(self) -> int:
        """Number of live (not cancelled) timers."""
        return sum(1 for _, _, t in self._queue if not t.cancelled)

    def advance(self, seconds: float) -> None:
        """Move time forward, firing every callback that falls due."""
        target = self._now + seconds
        while self._queue and self._queue[0][0] <= target:
            due, _, timer = heapq.heappop(self._queue)
            if timer.cancelled:
                continue
            self._now = due
            if timer.interval is not None:
                timer.due = due + timer.interval
                self._push(timer)
            timer.callback()
        self._now = target
