"""
Trigger evaluation: when does a job fire next?

Design Pattern: Strategy Pattern
Cron parsing sits behind the CronEvaluator protocol so the scheduler never
depends on a particular cron library. CroniterEvaluator is the default.

next_run_at() is pure: same schedule, same ``now``, same evaluator, same
answer. It never reads the clock.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable

from croniter import croniter

from pytaxis.models.job import Schedule

logger = logging.getLogger(__name__)


@runtime_checkable
class CronEvaluator(Protocol):
    """Computes the next fire time of a cron expression."""

    def next_fire_time(self, expr: str, after: datetime) -> datetime | None:
        """First fire time strictly after ``after``, or None if there is none.

        Raises:
            ValueError: If ``expr`` is not a valid cron expression
        """
        ...


class CroniterEvaluator:
    """CronEvaluator backed by croniter.

    Supports the standard five-field syntax plus croniter's extensions
    (``@hourly``, ``@daily``, six-field expressions with seconds).
    Naive ``after`` values are treated as UTC.
    """

    def next_fire_time(self, expr: str, after: datetime) -> datetime | None:
        if after.tzinfo is None:
            after = after.replace(tzinfo=UTC)
        try:
            return croniter(expr, after).get_next(datetime)
        except (ValueError, KeyError) as e:
            raise ValueError(f"Invalid cron expression {expr!r}: {e}") from e

    def is_valid(self, expr: str) -> bool:
        return croniter.is_valid(expr)


def next_run_at(
    schedule: Schedule,
    now: datetime,
    cron: CronEvaluator | None = None,
    inserted_at: datetime | None = None,
) -> datetime | None:
    """
    Next time a job with ``schedule`` should fire.

    Args:
        schedule: The job's trigger
        now: Reference time (usually the time of the last run)
        cron: Evaluator for cron triggers (default: CroniterEvaluator)
        inserted_at: Anchor for ``in_`` triggers; defaults to ``now``

    Returns:
        The next fire time, or None when the job only fires on an event or
        a one-shot time has already passed.

    Example:
        next_run_at(Schedule(every=timedelta(minutes=5)), now)   # now + 5 min
        next_run_at(Schedule(at=yesterday), now)                 # None
    """
    if schedule.every is not None:
        return now + schedule.every

    if schedule.cron is not None:
        evaluator = cron or CroniterEvaluator()
        candidates = [
            fire_time
            for expr in schedule.cron_expressions
            if (fire_time := evaluator.next_fire_time(expr, now)) is not None
        ]
        return min(candidates, default=None)

    if schedule.at is not None:
        return schedule.at if schedule.at > now else None

    if schedule.in_ is not None:
        return (inserted_at or now) + schedule.in_

    return None
