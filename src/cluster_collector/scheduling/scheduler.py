"""Cron scheduling for collection requests.

Three pieces:

- :func:`next_run_after` computes the next firing time from the cron
  expression, the last run (or creation) time and an optional starting
  deadline, refusing to catch up on more than ``MAX_MISSED_START_TIMES``
  missed firings.
- :func:`should_dispatch` decides whether a due request may dispatch now,
  absorbing back-to-back reconciliations inside ``DEBOUNCE_WINDOW``.
- :func:`schedule` combines both and submits the job to the collector.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from croniter import croniter

from cluster_collector.models import CollectionRequest

if TYPE_CHECKING:
    from cluster_collector.collector.dispatcher import CollectFn, Collector

logger = logging.getLogger(__name__)

MAX_MISSED_START_TIMES = 100
DEBOUNCE_WINDOW = timedelta(seconds=30)


class SchedulingError(Exception):
    """Raised when a request's schedule cannot be evaluated."""


class InvalidScheduleError(SchedulingError):
    """Raised for cron expressions that do not parse."""


class TooManyMissedStartTimesError(SchedulingError):
    """Raised when catching up would require too many missed firings."""


def parse_schedule(expression: str, start: datetime) -> croniter:
    """Return a croniter positioned at ``start``.

    Raises:
        InvalidScheduleError: If ``expression`` is not a valid 5-field cron.
    """
    if len(expression.split()) != 5 or not croniter.is_valid(expression):
        raise InvalidScheduleError(f"unparseable schedule {expression!r}")
    return croniter(expression, start)


def next_run_after(
    expression: str,
    baseline: datetime,
    deadline_seconds: int | None,
    now: datetime,
) -> datetime:
    """Return the first firing of ``expression`` strictly after ``now``.

    ``baseline`` is the last run time, or the creation time for a request
    that never ran.  With a deadline, firings older than
    ``now - deadline_seconds`` are not considered missed.  A baseline
    without an offset is read in ``now``'s timezone.

    Raises:
        InvalidScheduleError: If the expression does not parse.
        TooManyMissedStartTimesError: If more than ``MAX_MISSED_START_TIMES``
            firings fall between the baseline and ``now``.
    """
    earliest = baseline
    if earliest.tzinfo is None:
        earliest = earliest.replace(tzinfo=now.tzinfo)
    if deadline_seconds is not None:
        scheduling_deadline = now - timedelta(seconds=deadline_seconds)
        if scheduling_deadline > earliest:
            earliest = scheduling_deadline

    walker = parse_schedule(expression, earliest)
    missed = 0
    t = walker.get_next(datetime)
    while t < now:
        missed += 1
        if missed > MAX_MISSED_START_TIMES:
            raise TooManyMissedStartTimesError(
                f"too many missed start times (> {MAX_MISSED_START_TIMES}). "
                "Set or decrease starting_deadline_seconds or check clock skew"
            )
        t = walker.get_next(datetime)

    return parse_schedule(expression, now).get_next(datetime)


def should_dispatch(
    next_schedule_time: datetime,
    last_run_time: datetime | None,
    now: datetime,
) -> bool:
    """Whether a job may be dispatched at ``now``.

    False before the scheduled time, and false within ``DEBOUNCE_WINDOW``
    of the previous dispatch.
    """
    if now < next_schedule_time:
        logger.debug("not due until %s", next_schedule_time.isoformat())
        return False

    if last_run_time is not None:
        elapsed = now - last_run_time
        logger.debug("%.1f minutes since last run", elapsed.total_seconds() / 60)
        return elapsed >= DEBOUNCE_WINDOW

    return True


def schedule(
    request: CollectionRequest,
    collector: Collector,
    collect_fn: CollectFn,
    now: datetime,
    params: dict[str, object] | None = None,
) -> datetime:
    """Advance ``request.status`` scheduling fields, dispatching if due.

    On first touch (no ``next_schedule_time`` yet) only the next firing is
    recorded.  Afterwards, a due request is submitted to ``collector`` and
    ``now`` becomes its ``last_run_time``.  Returns the next firing time.

    Raises:
        SchedulingError: If the schedule is invalid or too far behind.
    """
    status = request.status
    baseline = status.last_run_time or request.metadata.creation_timestamp
    next_run = next_run_after(
        request.spec.schedule, baseline, request.spec.starting_deadline_seconds, now,
    )

    if status.next_schedule_time is None:
        logger.info("%s: first schedule at %s", request.key, next_run.isoformat())
    elif should_dispatch(status.next_schedule_time, status.last_run_time, now):
        queued = collector.submit(
            request.name,
            request.kind,
            collect_fn,
            storage=request.spec.storage,
            params=params,
        )
        logger.info(
            "%s: collection %s",
            request.key,
            "queued" if queued else "already in flight",
        )
        status.last_run_time = now

    status.next_schedule_time = next_run
    return next_run
