"""Collector: bounded worker pool that runs collection jobs.

The reconciler never runs a collection itself.  It submits a job keyed by
(request name, kind), polls :meth:`Collector.last_result` on later passes,
and purges everything for a request when it is deleted.

At most one job per key is queued or running at a time, so repeated
reconciliations of the same due window cannot grow the queue.
"""

from __future__ import annotations

import logging
import shutil
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from cluster_collector.models import CollectionKind, JobResult, ResultStatus

logger = logging.getLogger(__name__)

DEFAULT_WORKERS = 10

_UNAVAILABLE = JobResult(status=ResultStatus.UNAVAILABLE)
_IN_PROGRESS = JobResult(status=ResultStatus.IN_PROGRESS)
_COLLECTED = JobResult(status=ResultStatus.COLLECTED)


class CollectorError(Exception):
    """Raised when collector bookkeeping or artifacts cannot be purged."""


@dataclass(frozen=True)
class CollectJob:
    """Everything a collect function receives.

    ``cancelled`` is set when the request is purged; long-running collect
    functions should check it and return early.
    """

    request_name: str
    kind: CollectionKind
    storage: str
    params: dict[str, Any] = field(default_factory=dict)
    cancelled: threading.Event = field(default_factory=threading.Event)


CollectFn = Callable[[CollectJob], None]
"""Performs one collection. Returning means collected; raising means failed."""


@dataclass
class _Entry:
    job: CollectJob
    future: Future[None]


def artifact_dir(storage: str | Path, kind: CollectionKind, request_name: str) -> Path:
    """Directory holding every artifact collected for one request."""
    return Path(storage) / str(kind).lower() / request_name


class Collector:
    """Thread-pool backed job dispatcher.

    Thread-safe via a single lock guarding the in-flight and result tables.
    Worker threads only take the lock to record a terminal result.
    """

    def __init__(self, workers: int = DEFAULT_WORKERS) -> None:
        if workers < 1:
            raise CollectorError(f"workers must be >= 1, got {workers}")
        self._workers = workers
        self._pool = ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="collector",
        )
        self._lock = threading.Lock()
        self._inflight: dict[tuple[str, CollectionKind], _Entry] = {}
        self._results: dict[tuple[str, CollectionKind], JobResult] = {}

    @property
    def workers(self) -> int:
        return self._workers

    def submit(
        self,
        request_name: str,
        kind: CollectionKind,
        collect_fn: CollectFn,
        storage: str = "",
        params: dict[str, Any] | None = None,
    ) -> bool:
        """Queue a collection job.

        Returns False (and does nothing) if a job for the same request and
        kind is already queued or running.
        """
        key = (request_name, kind)
        with self._lock:
            if key in self._inflight:
                return False

            job = CollectJob(
                request_name=request_name,
                kind=kind,
                storage=storage,
                params=dict(params or {}),
            )
            entry = _Entry(job=job, future=Future())
            # The worker needs the lock to record its result, so it cannot
            # finish before the entry is registered below.
            entry.future = self._pool.submit(self._run, key, entry, collect_fn)
            self._inflight[key] = entry
            self._results[key] = _IN_PROGRESS
        return True

    def last_result(self, request_name: str, kind: CollectionKind) -> JobResult:
        """Latest known outcome for a request. Never blocks on a job."""
        with self._lock:
            return self._results.get((request_name, kind), _UNAVAILABLE)

    def purge_all(self, storage: str, request_name: str, kind: CollectionKind) -> None:
        """Drop queued work, results and artifacts for a request.

        A queued job is cancelled; a running job is signalled and its
        eventual result discarded.  Safe to call when nothing exists.

        Raises:
            CollectorError: If the artifact directory cannot be removed.
        """
        key = (request_name, kind)
        with self._lock:
            entry = self._inflight.pop(key, None)
            self._results.pop(key, None)

        if entry is not None:
            entry.job.cancelled.set()
            if entry.future.cancel():
                logger.debug("cancelled queued %s job for %s", kind, request_name)

        if not storage:
            return
        directory = artifact_dir(storage, kind, request_name)
        try:
            if directory.exists():
                shutil.rmtree(directory)
        except OSError as exc:
            raise CollectorError(
                f"Failed to remove artifacts for {kind} {request_name} in {directory}: {exc}"
            ) from exc

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            for entry in self._inflight.values():
                entry.job.cancelled.set()
        self._pool.shutdown(wait=wait, cancel_futures=True)

    def _run(
        self,
        key: tuple[str, CollectionKind],
        entry: _Entry,
        collect_fn: CollectFn,
    ) -> None:
        """Worker body: run the collect function and record its outcome."""
        try:
            collect_fn(entry.job)
        except Exception as exc:
            logger.warning("%s collection for %s failed: %s", key[1], key[0], exc)
            result = JobResult(status=ResultStatus.FAILED, error=str(exc) or type(exc).__name__)
        else:
            result = _COLLECTED

        with self._lock:
            # A purge (or purge and resubmit) replaced this entry
            if self._inflight.get(key) is not entry:
                return
            del self._inflight[key]
            self._results[key] = result
