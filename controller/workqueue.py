"""
Deduplicating, rate-limited work queue of object keys.

Guarantees that a key is never handed to two workers at once: a key added
while it is being processed is parked in ``_dirty`` and only re-queued when
the current worker calls ``done``. Failed keys come back through
``add_rate_limited`` with per-key exponential backoff.
"""

import heapq
import itertools
import logging
import threading
import time
from collections import deque

logger = logging.getLogger(__name__)


class ExponentialBackoff:
    """Per-item exponential failure backoff: base * 2^failures, capped at max_delay."""

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: dict = {}
        self._lock = threading.Lock()

    def when(self, item) -> float:
        with self._lock:
            failures = self._failures.get(item, 0)
            self._failures[item] = failures + 1
        # guard the exponent so huge failure counts cannot overflow
        if failures > 62:
            return self.max_delay
        return min(self.base_delay * (2 ** failures), self.max_delay)

    def forget(self, item) -> None:
        with self._lock:
            self._failures.pop(item, None)

    def num_requeues(self, item) -> int:
        with self._lock:
            return self._failures.get(item, 0)


class RateLimitingQueue:
    def __init__(self, name: str = "", rate_limiter: ExponentialBackoff | None = None,
                 clock=time.monotonic):
        self.name = name
        self.rate_limiter = rate_limiter or ExponentialBackoff()
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: deque = deque()
        self._dirty: set = set()
        self._processing: set = set()
        self._shutting_down = False

        # delayed adds: heap of (ready_at, seq, item); _ready_at holds the live entry per item
        self._waiting: list = []
        self._ready_at: dict = {}
        self._seq = itertools.count()
        self._delay_thread = threading.Thread(
            target=self._waiting_loop, name=f"{name or 'workqueue'}-delay", daemon=True,
        )
        self._delay_thread.start()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def add(self, item) -> None:
        with self._cond:
            self._add_locked(item)

    def _add_locked(self, item) -> None:
        if self._shutting_down or item in self._dirty:
            return
        self._dirty.add(item)
        if item in self._processing:
            return
        self._queue.append(item)
        self._cond.notify_all()

    def get(self, timeout: float | None = None):
        """Block until an item is available. Returns ``(item, shutdown)``.

        Items still queued at shutdown are handed out before ``shutdown``
        is reported, so in-flight work drains.
        """
        with self._cond:
            deadline = None if timeout is None else self._clock() + timeout
            while not self._queue and not self._shutting_down:
                remaining = None if deadline is None else deadline - self._clock()
                if remaining is not None and remaining <= 0:
                    return None, False
                self._cond.wait(remaining)
            if not self._queue:
                return None, True
            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            return item, False

    def done(self, item) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._cond.notify_all()

    def add_after(self, item, delay: float) -> None:
        if delay <= 0:
            self.add(item)
            return
        with self._cond:
            if self._shutting_down:
                return
            ready_at = self._clock() + delay
            current = self._ready_at.get(item)
            if current is not None and current <= ready_at:
                return
            self._ready_at[item] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._seq), item))
            self._cond.notify_all()

    def add_rate_limited(self, item) -> None:
        self.add_after(item, self.rate_limiter.when(item))

    def forget(self, item) -> None:
        self.rate_limiter.forget(item)

    def num_requeues(self, item) -> int:
        return self.rate_limiter.num_requeues(item)

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    def _waiting_loop(self) -> None:
        with self._cond:
            while not self._shutting_down:
                now = self._clock()
                while self._waiting and self._waiting[0][0] <= now:
                    ready_at, _, item = heapq.heappop(self._waiting)
                    if self._ready_at.get(item) != ready_at:
                        continue  # superseded by an earlier add_after
                    del self._ready_at[item]
                    self._add_locked(item)
                timeout = self._waiting[0][0] - now if self._waiting else None
                self._cond.wait(timeout)
