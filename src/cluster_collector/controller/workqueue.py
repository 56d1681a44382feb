"""Delaying, de-duplicating work queue.

Semantics:
- A key is queued at most once; re-adding keeps the earliest due time.
- A key handed to a worker is "processing" and is never handed to a
  second worker.  Adding it meanwhile marks it dirty; it is re-queued
  when the worker calls :meth:`done`.
- Per-key failure counts drive exponential backoff for error requeues.
"""

from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections.abc import Callable, Hashable
from typing import Generic, TypeVar

K = TypeVar("K", bound=Hashable)

DEFAULT_BASE_BACKOFF = 5.0
DEFAULT_MAX_BACKOFF = 1000.0


class WorkQueue(Generic[K]):
    """Thread-safe work queue keyed by hashable items.

    Times come from ``_clock`` (seconds, monotonic by default) so tests
    can drive it deterministically.
    """

    def __init__(
        self,
        base_backoff: float = DEFAULT_BASE_BACKOFF,
        max_backoff: float = DEFAULT_MAX_BACKOFF,
        _clock: Callable[[], float] | None = None,
    ) -> None:
        self._clock = _clock or time.monotonic
        self._base_backoff = base_backoff
        self._max_backoff = max_backoff
        self._cond = threading.Condition()
        self._heap: list[tuple[float, int, K]] = []
        self._due: dict[K, float] = {}
        self._processing: set[K] = set()
        self._dirty: dict[K, float] = {}
        self._failures: dict[K, int] = {}
        self._counter = itertools.count()
        self._shutdown = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._due)

    def add(self, key: K, delay: float = 0.0) -> None:
        """Queue ``key`` to become ready after ``delay`` seconds."""
        due = self._clock() + max(delay, 0.0)
        with self._cond:
            if self._shutdown:
                return
            if key in self._processing:
                previous = self._dirty.get(key)
                if previous is None or due < previous:
                    self._dirty[key] = due
                return
            self._push(key, due)

    def add_rate_limited(self, key: K) -> float:
        """Queue ``key`` after its backoff delay. Returns the delay used."""
        with self._cond:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        delay = min(self._base_backoff * (2 ** failures), self._max_backoff)
        self.add(key, delay)
        return delay

    def forget(self, key: K) -> None:
        """Reset the backoff for ``key``."""
        with self._cond:
            self._failures.pop(key, None)

    def failures(self, key: K) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def get(self, timeout: float | None = None) -> K | None:
        """Block until a key is due, then mark it processing.

        Returns None on timeout or shutdown.
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while not self._shutdown:
                now = self._clock()
                key = self._pop_due(now)
                if key is not None:
                    self._processing.add(key)
                    return key

                wait: float | None = None
                if self._heap:
                    wait = max(self._heap[0][0] - now, 0.0)
                if deadline is not None:
                    remaining = deadline - now
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)
            return None

    def done(self, key: K) -> None:
        """Finish processing ``key``; re-queue it if it was re-added."""
        with self._cond:
            self._processing.discard(key)
            due = self._dirty.pop(key, None)
            if due is not None and not self._shutdown:
                self._push(key, due)

    def shut_down(self) -> None:
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutdown

    def _push(self, key: K, due: float) -> None:
        """Queue or advance ``key``. Caller holds the lock."""
        current = self._due.get(key)
        if current is not None and current <= due:
            return
        self._due[key] = due
        heapq.heappush(self._heap, (due, next(self._counter), key))
        self._cond.notify()

    def _pop_due(self, now: float) -> K | None:
        """Pop the earliest due key, skipping stale heap entries."""
        while self._heap:
            due, _, key = self._heap[0]
            if self._due.get(key) != due:
                heapq.heappop(self._heap)
                continue
            if due > now:
                return None
            heapq.heappop(self._heap)
            del self._due[key]
            return key
        return None
