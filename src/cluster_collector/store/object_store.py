"""Collection request store.

The ``ObjectStore`` protocol is what the reconciler needs from persistence:
get, list, create, update and status update with optimistic concurrency
on ``metadata.resource_version``.

``LocalObjectStore`` keeps requests in memory and, when given a path,
treats a JSON file as the shared source of truth: every operation takes an
exclusive ``flock`` on ``<store>.lock``, reloads the file, and rewrites it
after a change.  Several processes (``run`` plus ``apply``/``delete``) can
therefore share one store file.  It follows Kubernetes deletion
semantics: deleting an object that still has finalizers only sets its
deletion timestamp; the update that removes the last finalizer removes the
object.
"""

from __future__ import annotations

import fcntl
import json
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import yaml
from pydantic import ValidationError

from cluster_collector.models import (
    CollectionKind,
    CollectionRequest,
    ObjectKey,
    dump_request,
    parse_request,
)


class StoreError(Exception):
    """Raised when the object store cannot serve a request."""


class NotFoundError(StoreError):
    """Raised when the requested object does not exist."""


class ConflictError(StoreError):
    """Raised when an update carries a stale resource version."""


@runtime_checkable
class ObjectStore(Protocol):
    """Protocol for collection request storage backends."""

    def get(self, key: ObjectKey) -> CollectionRequest: ...

    def list(self, kind: CollectionKind | None = None) -> list[CollectionRequest]: ...

    def create(self, request: CollectionRequest) -> CollectionRequest: ...

    def update(self, request: CollectionRequest) -> CollectionRequest: ...

    def update_status(self, request: CollectionRequest) -> CollectionRequest: ...

    def delete(self, key: ObjectKey) -> None: ...


WatchCallback = Callable[[CollectionRequest | None, CollectionRequest | None], None]
"""Called with (old, new) after every change; None marks absence."""

Change = tuple[CollectionRequest | None, CollectionRequest | None]


def _revision(obj: CollectionRequest | None) -> tuple[int, datetime] | None:
    if obj is None:
        return None
    return (obj.metadata.resource_version, obj.metadata.creation_timestamp)


class LocalObjectStore:
    """Request store with optional JSON file persistence.

    Thread-safe via a lock, and process-safe via ``flock`` when file backed.
    Objects handed out are deep copies, so a caller mutating its copy never
    changes stored state until it writes the copy back.

    Watchers see this instance's own writes and, whenever an operation
    reloads the file, the writes other processes made since the last one.
    """

    def __init__(
        self,
        path: str | Path | None = None,
        _clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path) if path is not None else None
        self._clock = _clock or (lambda: datetime.now(tz=UTC))
        self._lock = threading.Lock()
        self._objects: dict[ObjectKey, CollectionRequest] = {}
        self._watchers: list[WatchCallback] = []
        if self._path is not None:
            self._objects = self._read_all()

    @property
    def path(self) -> Path | None:
        return self._path

    def watch(self, callback: WatchCallback) -> None:
        """Register a change callback (invoked outside the lock)."""
        self._watchers.append(callback)

    def refresh(self) -> None:
        """Reload the store file, notifying watchers of external changes."""
        with self._synced():
            pass

    def get(self, key: ObjectKey) -> CollectionRequest:
        with self._synced():
            obj = self._objects.get(key)
            if obj is None:
                raise NotFoundError(f"{key} not found")
            return obj.model_copy(deep=True)

    def list(self, kind: CollectionKind | None = None) -> list[CollectionRequest]:
        with self._synced():
            return [
                obj.model_copy(deep=True)
                for key, obj in sorted(self._objects.items(), key=lambda kv: str(kv[0]))
                if kind is None or key.kind == kind
            ]

    def create(self, request: CollectionRequest) -> CollectionRequest:
        """Store a new request at resource version 1."""
        with self._synced() as changes:
            if request.key in self._objects:
                raise ConflictError(f"{request.key} already exists")
            stored = request.model_copy(deep=True)
            stored.metadata.resource_version = 1
            stored.metadata.generation = 1
            stored.metadata.deletion_timestamp = None
            self._objects[stored.key] = stored
            self._write_all()
            result = stored.model_copy(deep=True)
            changes.append((None, result))
        return result

    def update(self, request: CollectionRequest) -> CollectionRequest:
        """Write metadata and spec; status changes are ignored.

        The generation is bumped when the spec changes.  A deleting object
        left without finalizers is removed.
        """
        with self._synced() as changes:
            current = self._checked_current(request)
            stored = current.model_copy(deep=True)
            stored.metadata.finalizers = list(request.metadata.finalizers)
            stored.metadata.labels = dict(request.metadata.labels)
            if request.spec != current.spec:
                stored.spec = request.spec.model_copy(deep=True)
                stored.metadata.generation += 1
            stored.metadata.resource_version += 1

            if stored.is_deleting and not stored.metadata.finalizers:
                del self._objects[stored.key]
                result = None
            else:
                self._objects[stored.key] = stored
                result = stored.model_copy(deep=True)
            self._write_all()
            changes.append((current, result))

        return result if result is not None else stored

    def update_status(self, request: CollectionRequest) -> CollectionRequest:
        """Write only the status subresource."""
        with self._synced() as changes:
            current = self._checked_current(request)
            stored = current.model_copy(deep=True)
            stored.status = request.status.model_copy(deep=True)
            stored.metadata.resource_version += 1
            self._objects[stored.key] = stored
            self._write_all()
            result = stored.model_copy(deep=True)
            changes.append((current, result))
        return result

    def delete(self, key: ObjectKey) -> None:
        """Delete or, when finalizers remain, mark for deletion."""
        with self._synced() as changes:
            current = self._objects.get(key)
            if current is None:
                raise NotFoundError(f"{key} not found")
            if not current.metadata.finalizers:
                del self._objects[key]
                result = None
            else:
                if current.is_deleting:
                    return
                stored = current.model_copy(deep=True)
                stored.metadata.deletion_timestamp = self._clock()
                stored.metadata.resource_version += 1
                self._objects[key] = stored
                result = stored.model_copy(deep=True)
            self._write_all()
            changes.append((current, result))

    @contextmanager
    def _synced(self) -> Iterator[list[Change]]:
        """Hold both locks with memory reloaded from the store file.

        Yields a list of changes: those found on disk, to which the caller
        appends its own.  Watchers get them all once the locks are released,
        including when the caller raises.
        """
        changes: list[Change] = []
        try:
            with self._lock, self._file_lock():
                changes.extend(self._reload())
                yield changes
        finally:
            for old, new in changes:
                self._notify(old, new)

    @contextmanager
    def _file_lock(self) -> Iterator[None]:
        """Exclusive cross-process lock on ``<store>.lock``."""
        if self._path is None:
            yield
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        lock_path = self._path.with_name(self._path.name + ".lock")
        with lock_path.open("a", encoding="utf-8") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def _reload(self) -> list[Change]:
        """Replace memory with the file contents. Caller holds the locks.

        Returns (old, new) for every object written elsewhere since the
        last reload.
        """
        if self._path is None:
            return []
        on_disk = self._read_all()
        changes: list[Change] = []
        for key in sorted(self._objects.keys() | on_disk.keys(), key=str):
            old, new = self._objects.get(key), on_disk.get(key)
            if _revision(old) != _revision(new):
                changes.append((old, new.model_copy(deep=True) if new is not None else None))
        self._objects = on_disk
        return changes

    def _checked_current(self, request: CollectionRequest) -> CollectionRequest:
        """Return the stored object, enforcing optimistic concurrency."""
        current = self._objects.get(request.key)
        if current is None:
            raise NotFoundError(f"{request.key} not found")
        if request.metadata.resource_version != current.metadata.resource_version:
            raise ConflictError(
                f"{request.key}: resource version {request.metadata.resource_version} "
                f"is stale (current {current.metadata.resource_version})"
            )
        return current

    def _notify(
        self, old: CollectionRequest | None, new: CollectionRequest | None,
    ) -> None:
        for callback in list(self._watchers):
            callback(old, new)

    def _read_all(self) -> dict[ObjectKey, CollectionRequest]:
        """Load the store file, if present."""
        assert self._path is not None
        if not self._path.exists():
            return {}
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8") or "[]")
            objects = [parse_request(entry) for entry in raw]
        except (json.JSONDecodeError, ValidationError, TypeError) as exc:
            raise StoreError(f"Corrupt store file {self._path}: {exc}") from exc
        return {obj.key: obj for obj in objects}

    def _write_all(self) -> None:
        """Rewrite the store file atomically. Caller holds the locks."""
        if self._path is None:
            return
        payload = [
            dump_request(obj)
            for _, obj in sorted(self._objects.items(), key=lambda kv: str(kv[0]))
        ]
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
        tmp_path.replace(self._path)


def load_requests(
    path: str | Path,
    now: datetime | None = None,
) -> list[CollectionRequest]:
    """Load collection requests from a YAML file.

    The YAML file must have a top-level 'requests' key containing a list
    of Snapshot / Techsupport objects.  A missing creation timestamp is
    filled with *now*.

    Raises:
        StoreError: If the file cannot be read, parsed, or validated.
    """
    path = Path(path)
    if not path.exists():
        raise StoreError(f"Requests file not found: {path}")

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise StoreError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw, dict) or "requests" not in raw:
        raise StoreError(f"Requests file must have a top-level 'requests' key: {path}")

    raw_requests: Any = raw["requests"]
    if not isinstance(raw_requests, list):
        raise StoreError(f"'requests' must be a list: {path}")

    stamp = now or datetime.now(tz=UTC)
    requests: list[CollectionRequest] = []
    for i, entry in enumerate(raw_requests):
        if not isinstance(entry, dict):
            raise StoreError(f"Invalid request at index {i} in {path}: expected a mapping")
        metadata = entry.get("metadata")
        if isinstance(metadata, dict) and not (
            metadata.get("creationTimestamp") or metadata.get("creation_timestamp")
        ):
            entry = {**entry, "metadata": {**metadata, "creationTimestamp": stamp}}
        try:
            requests.append(parse_request(entry))
        except ValidationError as e:
            raise StoreError(f"Invalid request at index {i} in {path}: {e}") from e

    return requests
