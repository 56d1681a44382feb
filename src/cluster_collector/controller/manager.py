"""Controller: drives the reconciler from a work queue.

Watch notifications are filtered by the predicate tables and turned into
request keys.  A target notification fans out to every request that
currently references the target plus every request whose selector matches
the target's labels now.  Workers pop keys, reconcile, and requeue
according to the result; errors are retried with per-key backoff.

Usage::

    controller = Controller(reconciler, index)
    controller.start()
    controller.on_request_event(Event(EventKind.CREATE, snapshot))
    ...
    controller.stop()
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable

from cluster_collector.controller.predicates import (
    REQUEST_PREDICATES,
    TARGET_PREDICATES,
    Event,
    EventKind,
    admit,
)
from cluster_collector.controller.reconciler import Reconciler
from cluster_collector.controller.workqueue import WorkQueue
from cluster_collector.index.reverse_index import ReverseIndex
from cluster_collector.models import (
    CollectionKind,
    CollectionRequest,
    ObjectKey,
    RequestKey,
    Target,
)
from cluster_collector.targets.catalog import diff_targets

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT_RECONCILES = 1


def object_key(ref: RequestKey) -> ObjectKey:
    """Convert an index key back to a store key."""
    return ObjectKey(kind=CollectionKind(ref.kind), name=ref.name, namespace=ref.namespace)


class Controller:
    """Runs reconciliations for queued request keys on worker threads."""

    def __init__(
        self,
        reconciler: Reconciler,
        index: ReverseIndex,
        queue: WorkQueue[ObjectKey] | None = None,
        max_concurrent_reconciles: int = DEFAULT_MAX_CONCURRENT_RECONCILES,
    ) -> None:
        if max_concurrent_reconciles < 1:
            raise ValueError(
                f"max_concurrent_reconciles must be >= 1, got {max_concurrent_reconciles}"
            )
        self._reconciler = reconciler
        self._index = index
        self._queue: WorkQueue[ObjectKey] = queue or WorkQueue()
        self._max_concurrent = max_concurrent_reconciles
        self._threads: list[threading.Thread] = []

    @property
    def queue(self) -> WorkQueue[ObjectKey]:
        return self._queue

    # --- Event intake ---

    def enqueue(self, key: ObjectKey, delay: float = 0.0) -> None:
        self._queue.add(key, delay)

    def enqueue_all(self, keys: Iterable[ObjectKey]) -> None:
        for key in keys:
            self._queue.add(key)

    def on_request_event(self, event: Event[CollectionRequest]) -> bool:
        """Queue the request if the event passes the request predicates."""
        if not admit(REQUEST_PREDICATES, event):
            return False
        self._queue.add(event.obj.key)
        return True

    def on_target_event(self, event: Event[Target]) -> bool:
        """Queue every request affected by a target change."""
        if not admit(TARGET_PREDICATES, event):
            return False

        target = event.obj
        affected = self._index.requests_for(target.ref)
        if event.kind != EventKind.DELETE:
            affected |= self._index.requests_selecting(target.labels)

        for ref in sorted(affected, key=lambda r: r.sort_key()):
            self._queue.add(object_key(ref))
        logger.debug("target %s: queued %d request(s)", target.ref, len(affected))
        return True

    def on_catalog_change(self, previous: list[Target], current: list[Target]) -> int:
        """Feed the difference between two catalog listings as target events.

        Returns the number of events admitted.
        """
        admitted = 0
        for kind, target, old in diff_targets(previous, current):
            if self.on_target_event(Event(EventKind(kind), target, old)):
                admitted += 1
        return admitted

    def on_store_change(
        self, old: CollectionRequest | None, new: CollectionRequest | None,
    ) -> None:
        """Adapter for ``LocalObjectStore.watch`` callbacks."""
        if new is None and old is not None:
            self.on_request_event(Event(EventKind.DELETE, old))
        elif new is not None and old is None:
            self.on_request_event(Event(EventKind.CREATE, new))
        elif new is not None:
            self.on_request_event(Event(EventKind.UPDATE, new, old))

    # --- Processing ---

    def process_next(self, timeout: float | None = None) -> bool:
        """Reconcile one due key. Returns False if none was available."""
        key = self._queue.get(timeout=timeout)
        if key is None:
            return False

        try:
            result = self._reconciler.reconcile(key)
        except Exception:
            delay = self._queue.add_rate_limited(key)
            logger.exception("reconcile of %s failed, retrying in %.0fs", key, delay)
        else:
            self._queue.forget(key)
            if result.requeue_after is not None:
                self._queue.add(key, result.requeue_after.total_seconds())
        finally:
            self._queue.done(key)
        return True

    def start(self) -> None:
        """Start the worker threads."""
        if self._threads:
            return
        for i in range(self._max_concurrent):
            thread = threading.Thread(
                target=self._worker, name=f"reconcile-worker-{i}", daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        logger.info("started %d reconcile worker(s)", self._max_concurrent)

    def stop(self, timeout: float = 5.0) -> None:
        self._queue.shut_down()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []

    def _worker(self) -> None:
        while not self._queue.shutting_down:
            self.process_next(timeout=1.0)
