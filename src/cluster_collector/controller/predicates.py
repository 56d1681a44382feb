"""Admission filters for watch notifications.

Each watched type has one table mapping an event kind to a plain predicate.
A notification that fails its predicate never reaches the work queue.

Only label, pause and readiness changes on a target can change which
requests select it, so other target updates are dropped.  Request updates
are admitted when the spec changed (generation bump) or deletion started;
status writes made by the reconciler itself are dropped.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from cluster_collector.models import CollectionRequest, Target

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EventKind(enum.StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    GENERIC = "generic"


@dataclass(frozen=True)
class Event(Generic[T]):
    """A watch notification.

    ``obj`` is the current object (the deleted one for DELETE).  ``old`` is
    only meaningful for UPDATE and may be None when the previous state is
    unknown.
    """

    kind: EventKind
    obj: T
    old: T | None = None


Predicate = Callable[[Event[Any]], bool]


# --- Targets ---


def target_create(event: Event[Target]) -> bool:
    target = event.obj
    if not target.paused:
        logger.debug("target %s is not paused, will reconcile consumers", target.ref)
        return True
    logger.debug("target %s is paused, ignoring create", target.ref)
    return False


def target_update(event: Event[Target]) -> bool:
    new, old = event.obj, event.old
    if old is None:
        logger.debug("previous state of %s unknown, will reconcile consumers", new.ref)
        return True

    if old.paused and not new.paused:
        logger.debug("target %s was unpaused", new.ref)
        return True

    if not old.ready and new.ready:
        logger.debug("target %s became ready", new.ref)
        return True

    if old.labels != new.labels:
        logger.debug("target %s labels changed", new.ref)
        return True

    logger.debug("target %s update does not affect selection", new.ref)
    return False


def target_delete(event: Event[Target]) -> bool:
    logger.debug("target %s deleted, will reconcile consumers", event.obj.ref)
    return True


def target_generic(event: Event[Target]) -> bool:
    return False


# --- Collection requests ---


def request_create(event: Event[CollectionRequest]) -> bool:
    logger.debug("%s created", event.obj.key)
    return True


def request_update(event: Event[CollectionRequest]) -> bool:
    new, old = event.obj, event.old
    if old is None:
        return True

    if new.metadata.generation != old.metadata.generation:
        logger.debug("%s spec changed", new.key)
        return True

    if new.is_deleting and not old.is_deleting:
        logger.debug("%s is being deleted", new.key)
        return True

    return False


def request_delete(event: Event[CollectionRequest]) -> bool:
    logger.debug("%s deleted", event.obj.key)
    return True


def request_generic(event: Event[CollectionRequest]) -> bool:
    return False


TARGET_PREDICATES: dict[EventKind, Predicate] = {
    EventKind.CREATE: target_create,
    EventKind.UPDATE: target_update,
    EventKind.DELETE: target_delete,
    EventKind.GENERIC: target_generic,
}

REQUEST_PREDICATES: dict[EventKind, Predicate] = {
    EventKind.CREATE: request_create,
    EventKind.UPDATE: request_update,
    EventKind.DELETE: request_delete,
    EventKind.GENERIC: request_generic,
}


def admit(table: dict[EventKind, Predicate], event: Event[Any]) -> bool:
    """Evaluate ``event`` against a predicate table. Unknown kinds are dropped."""
    predicate = table.get(event.kind)
    if predicate is None:
        return False
    return predicate(event)
