"""Target catalog.

A catalog lists the remote clusters of one kind.  ``LocalTargetCatalog``
loads them from a YAML file; the Kubernetes-backed catalog lives in
``cluster_collector.store.k8s``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import yaml
from pydantic import ValidationError

from cluster_collector.models import Target, TargetReference


class CatalogError(Exception):
    """Raised when the catalog file is invalid or cannot be loaded."""


@runtime_checkable
class TargetCatalog(Protocol):
    """Protocol for target catalogs.

    Any object with a ``list(kind)`` method satisfies this protocol.
    """

    def list(self, kind: str) -> list[Target]:
        """Return every target of ``kind``, in a stable order."""
        ...


class LocalTargetCatalog:
    """In-memory target catalog.

    Provides lookup by reference and listing by kind.  ``replace`` swaps
    the full target set, which is how the local backend simulates fleet
    changes.
    """

    def __init__(self, targets: list[Target] | None = None) -> None:
        self._targets: dict[TargetReference, Target] = {}
        self.replace(targets or [])

    def replace(self, targets: list[Target]) -> None:
        indexed: dict[TargetReference, Target] = {}
        for target in targets:
            if target.ref in indexed:
                raise CatalogError(f"Duplicate target: {target.ref}")
            indexed[target.ref] = target
        self._targets = indexed

    @property
    def targets(self) -> list[Target]:
        return list(self._targets.values())

    def __len__(self) -> int:
        return len(self._targets)

    def get(self, ref: TargetReference) -> Target | None:
        """Look up a target by reference. Returns None if not found."""
        return self._targets.get(ref)

    def list(self, kind: str) -> list[Target]:
        return [t for t in self._targets.values() if t.kind == kind]


def load_catalog(path: str | Path) -> LocalTargetCatalog:
    """Load and validate a target catalog from a YAML file.

    The YAML file must have a top-level 'targets' key containing a list
    of target definitions.

    Raises:
        CatalogError: If the file cannot be read, parsed, or validated.
    """
    path = Path(path)
    if not path.exists():
        raise CatalogError(f"Catalog file not found: {path}")

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise CatalogError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw, dict) or "targets" not in raw:
        raise CatalogError(f"Catalog file must have a top-level 'targets' key: {path}")

    raw_targets: Any = raw["targets"]
    if not isinstance(raw_targets, list):
        raise CatalogError(f"'targets' must be a list: {path}")

    targets: list[Target] = []
    for i, entry in enumerate(raw_targets):
        try:
            targets.append(Target(**entry))
        except (ValidationError, TypeError) as e:
            raise CatalogError(f"Invalid target at index {i} in {path}: {e}") from e

    return LocalTargetCatalog(targets)


def diff_targets(
    previous: list[Target], current: list[Target],
) -> list[tuple[str, Target, Target | None]]:
    """Compare two catalog listings.

    Returns ``(event_kind, target, old_target)`` tuples where event_kind is
    ``"create"``, ``"update"`` or ``"delete"``.  Unchanged targets are
    omitted.
    """
    before = {t.ref: t for t in previous}
    after = {t.ref: t for t in current}
    changes: list[tuple[str, Target, Target | None]] = []
    for ref, target in after.items():
        old = before.get(ref)
        if old is None:
            changes.append(("create", target, None))
        elif old != target:
            changes.append(("update", target, old))
    for ref, old in before.items():
        if ref not in after:
            changes.append(("delete", old, None))
    return changes
