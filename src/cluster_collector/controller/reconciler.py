"""Reconciler: per-request control loop.

Each pass re-reads the request from the store and re-derives everything
from it, so duplicate or out-of-order notifications converge.

Normal lifecycle:
  1. Ensure the finalizer is present
  2. Match targets and record them in status
  3. Update the reverse index
  4. Fold the collector's last result into status
  5. Schedule (and maybe dispatch) the next collection
  6. Persist status
  7. Requeue: soon while in progress, else at the next firing

Terminating lifecycle:
  1. Purge collector state and artifacts
  2. Remove the finalizer and persist
  3. Drop the request from the reverse index
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from cluster_collector.collector.dispatcher import CollectFn, Collector
from cluster_collector.index.reverse_index import ReverseIndex, request_key
from cluster_collector.models import (
    CollectionKind,
    CollectionRequest,
    CollectionStatus,
    JobResult,
    ObjectKey,
    ReconcileResult,
    ResultStatus,
)
from cluster_collector.scheduling.scheduler import schedule
from cluster_collector.store.object_store import NotFoundError, ObjectStore, StoreError
from cluster_collector.targets.matcher import TargetMatcher

logger = logging.getLogger(__name__)

REQUEUE_AFTER = timedelta(seconds=20)


class ReconcileError(Exception):
    """Raised for reconciler configuration errors."""


def fold_result(request: CollectionRequest, result: JobResult) -> None:
    """Reflect a collector result in ``request.status``.

    UNAVAILABLE (nothing ever ran) leaves the status untouched.
    """
    if result.status == ResultStatus.UNAVAILABLE:
        return

    message = ""
    if result.status == ResultStatus.COLLECTED:
        status = CollectionStatus.COLLECTED
    elif result.status == ResultStatus.IN_PROGRESS:
        status = CollectionStatus.IN_PROGRESS
    else:
        status = CollectionStatus.FAILED
        message = result.error or ""

    request.status.last_run_status = status
    request.status.failure_message = message


class Reconciler:
    """Reconciles one collection request per call.

    Collaborators are injected; the reconciler holds no per-request state
    of its own between calls.
    """

    def __init__(
        self,
        store: ObjectStore,
        matcher: TargetMatcher,
        index: ReverseIndex,
        collector: Collector,
        collect_fns: dict[CollectionKind, CollectFn],
        _clock: Callable[[], datetime] | None = None,
    ) -> None:
        missing = [str(k) for k in CollectionKind if k not in collect_fns]
        if missing:
            raise ReconcileError(f"No collect function for kinds: {', '.join(missing)}")
        self._store = store
        self._matcher = matcher
        self._index = index
        self._collector = collector
        self._collect_fns = dict(collect_fns)
        self._clock = _clock or (lambda: datetime.now(tz=UTC))

    def reconcile(self, key: ObjectKey) -> ReconcileResult:
        """Run one reconciliation pass for ``key``.

        Returns when to requeue.  Transient store failures are absorbed into
        a short requeue.

        Raises:
            SelectorError: If the request's cluster selector is malformed.
            SchedulingError: If the schedule is invalid or too far behind.
            CollectorError: If purging fails while terminating.
            StoreError: If the finalizer cannot be removed while terminating.
            IndexKeyError: If the request lacks type metadata.
        """
        logger.debug("reconciling %s", key)
        try:
            request = self._store.get(key)
        except NotFoundError:
            logger.debug("%s not found, dropping index entry", key)
            self._index.remove_named(str(key.kind), key.namespace, key.name)
            return ReconcileResult()

        if request.is_deleting:
            return self._reconcile_delete(request)
        return self._reconcile_normal(request)

    def _reconcile_normal(self, request: CollectionRequest) -> ReconcileResult:
        if not request.has_finalizer():
            request.metadata.finalizers.append(request.finalizer)
            try:
                request = self._store.update(request)
            except StoreError as exc:
                logger.warning("%s: failed to add finalizer: %s", request.key, exc)
                return ReconcileResult(requeue_after=REQUEUE_AFTER)

        index_key = request_key(request)

        matching = self._matcher.match(request.spec.cluster_selector)
        matching.sort(key=lambda ref: ref.sort_key())
        request.status.matching_target_refs = matching
        self._index.update(index_key, matching, request.spec.cluster_selector)

        fold_result(request, self._collector.last_result(request.name, request.kind))

        now = self._clock()
        params = {
            "matching_targets": [ref.model_dump(mode="json", by_alias=True) for ref in matching],
        }
        next_run = schedule(
            request,
            self._collector,
            self._collect_fns[request.kind],
            now,
            params=params,
        )

        try:
            request = self._store.update_status(request)
        except StoreError as exc:
            logger.warning("%s: failed to persist status: %s", request.key, exc)
            return ReconcileResult(requeue_after=REQUEUE_AFTER)

        if request.status.last_run_status == CollectionStatus.IN_PROGRESS:
            logger.info("%s: collection still in progress", request.key)
            return ReconcileResult(requeue_after=REQUEUE_AFTER)

        logger.debug("%s: next run at %s", request.key, next_run.isoformat())
        return ReconcileResult(requeue_after=max(next_run - now, timedelta(0)))

    def _reconcile_delete(self, request: CollectionRequest) -> ReconcileResult:
        logger.info("%s: terminating", request.key)

        self._collector.purge_all(request.spec.storage, request.name, request.kind)

        if request.has_finalizer():
            request.metadata.finalizers.remove(request.finalizer)
            self._store.update(request)

        self._index.remove(request_key(request))
        logger.info("%s: cleanup complete", request.key)
        return ReconcileResult()
