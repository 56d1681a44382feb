"""Reconciliation control loop.

Reconciler (one pass per request), Controller (work queue + workers) and
the event predicate tables.
"""

from cluster_collector.controller.manager import Controller
from cluster_collector.controller.predicates import (
    REQUEST_PREDICATES,
    TARGET_PREDICATES,
    Event,
    EventKind,
    admit,
)
from cluster_collector.controller.reconciler import REQUEUE_AFTER, Reconciler
from cluster_collector.controller.workqueue import WorkQueue

__all__ = [
    "Controller",
    "Event",
    "EventKind",
    "REQUEST_PREDICATES",
    "REQUEUE_AFTER",
    "Reconciler",
    "TARGET_PREDICATES",
    "WorkQueue",
    "admit",
]
