"""Bidirectional request <-> target index.

Keeps, under a single lock, the targets each collection request currently
matches and, for each target, the requests that consume it.  A target
change can then be fanned out to exactly the requests that care about it.

Usage::

    index = ReverseIndex()
    index.update(request_key(snapshot), {ref_a, ref_b}, selector)
    index.requests_for(ref_a)   # {request key}
    index.remove(request_key(snapshot))

The index is a volatile cache: it is rebuilt by reconciliation after a
restart and never persisted.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable

from cluster_collector.models import (
    CollectionRequest,
    LabelSelector,
    ObjectReference,
    RequestKey,
    TargetReference,
)
from cluster_collector.targets.selector import SelectorError, compile_selector


class IndexKeyError(Exception):
    """Raised when an object lacks the type metadata needed to key it."""


def request_key(request: CollectionRequest) -> RequestKey:
    """Build the index key for a collection request.

    Raises:
        IndexKeyError: If the request has no kind, api version or name.
    """
    if not request.kind or not request.api_version or not request.metadata.name:
        raise IndexKeyError(
            f"Cannot build index key for {request.metadata.name!r}: "
            f"kind={request.kind!r} api_version={request.api_version!r}"
        )
    return ObjectReference(
        namespace=request.metadata.namespace,
        name=request.metadata.name,
        kind=str(request.kind),
        api_version=request.api_version,
    )


class ReverseIndex:
    """Request -> targets and target -> requests maps behind one lock.

    Both maps are mutated in the same critical section, so readers never
    see one side updated without the other.  Consumer sets that become
    empty are dropped.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._request_targets: dict[RequestKey, set[TargetReference]] = {}
        self._target_requests: dict[TargetReference, set[RequestKey]] = {}
        self._selectors: dict[RequestKey, LabelSelector | None] = {}

    def update(
        self,
        key: RequestKey,
        targets: Iterable[TargetReference],
        selector: LabelSelector | None = None,
    ) -> None:
        """Replace the match set of ``key`` and fix up consumer sets."""
        current = set(targets)

        with self._lock:
            removed = self._request_targets.get(key, set()) - current

            for target in current:
                self._target_requests.setdefault(target, set()).add(key)

            for target in removed:
                self._discard_consumer(target, key)

            self._request_targets[key] = current
            self._selectors[key] = selector

    def remove(self, key: RequestKey) -> None:
        """Forget ``key`` entirely. Safe to call for unknown keys."""
        with self._lock:
            self._request_targets.pop(key, None)
            self._selectors.pop(key, None)
            # Full scan: removal is rare compared to update
            for target in list(self._target_requests):
                self._discard_consumer(target, key)

    def remove_named(self, kind: str, namespace: str, name: str) -> None:
        """Forget every key for (kind, namespace, name), whatever its api version.

        Used when only the store key of a vanished request is known.
        """
        with self._lock:
            stale = {
                key for key in self._request_targets.keys() | self._selectors.keys()
                if (key.kind, key.namespace, key.name) == (kind, namespace, name)
            }
            for key in stale:
                self._request_targets.pop(key, None)
                self._selectors.pop(key, None)
            for target in list(self._target_requests):
                for key in stale:
                    self._discard_consumer(target, key)

    def targets_for(self, key: RequestKey) -> set[TargetReference]:
        with self._lock:
            return set(self._request_targets.get(key, ()))

    def requests_for(self, target: TargetReference) -> set[RequestKey]:
        with self._lock:
            return set(self._target_requests.get(target, ()))

    def requests_selecting(self, labels: dict[str, str]) -> set[RequestKey]:
        """Requests whose remembered selector matches ``labels``.

        Used to route a target whose labels changed to requests that do
        not reference it yet.  Selectors that no longer compile are skipped;
        their reconciliation reports the error.
        """
        with self._lock:
            selectors = list(self._selectors.items())

        selecting: set[RequestKey] = set()
        for key, selector in selectors:
            if selector is None:
                continue
            try:
                if compile_selector(selector).matches(labels):
                    selecting.add(key)
            except SelectorError:
                continue
        return selecting

    def keys(self) -> set[RequestKey]:
        with self._lock:
            return set(self._request_targets)

    def snapshot(
        self,
    ) -> tuple[dict[RequestKey, set[TargetReference]], dict[TargetReference, set[RequestKey]]]:
        """Consistent copy of both maps, taken under the lock."""
        with self._lock:
            return (
                {k: set(v) for k, v in self._request_targets.items()},
                {k: set(v) for k, v in self._target_requests.items()},
            )

    def _discard_consumer(self, target: TargetReference, key: RequestKey) -> None:
        """Remove ``key`` from ``target``'s consumers. Caller holds the lock."""
        consumers = self._target_requests.get(target)
        if consumers is None:
            return
        consumers.discard(key)
        if not consumers:
            del self._target_requests[target]
