"""Target matcher: resolve a selector to the clusters it currently selects."""

from __future__ import annotations

from cluster_collector.models import (
    CLUSTER_KIND,
    SVELTOS_CLUSTER_KIND,
    LabelSelector,
    TargetReference,
)
from cluster_collector.targets.catalog import TargetCatalog
from cluster_collector.targets.selector import compile_selector

DEFAULT_TARGET_KINDS = (CLUSTER_KIND, SVELTOS_CLUSTER_KIND)


class TargetMatcher:
    """Matches selectors against every target kind in a catalog.

    Targets with a deletion timestamp never match.  Results keep catalog
    order, kind by kind.
    """

    def __init__(
        self,
        catalog: TargetCatalog,
        kinds: tuple[str, ...] = DEFAULT_TARGET_KINDS,
    ) -> None:
        self._catalog = catalog
        self._kinds = kinds

    @property
    def kinds(self) -> tuple[str, ...]:
        return self._kinds

    def match(self, selector: LabelSelector | None) -> list[TargetReference]:
        """Return references to all live targets selected by ``selector``.

        ``None`` selects nothing.

        Raises:
            SelectorError: If the selector is malformed.
        """
        if selector is None:
            return []

        compiled = compile_selector(selector)
        matching: list[TargetReference] = []
        for kind in self._kinds:
            for target in self._catalog.list(kind):
                if target.deletion_timestamp is not None:
                    continue
                if compiled.matches(target.labels):
                    matching.append(target.ref)
        return matching
