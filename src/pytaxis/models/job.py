"""
Scheduler-level job records.

A Job is standalone work fired by a trigger (cron, interval, one-shot or
event). It runs either a callable or a registered workflow by name.
Jobs are persisted through a JobStore; every field here must be
picklable when the SQLite store is used, so callables should be module
level functions.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from pytaxis.models.retry import Backoff, RetryPolicy
from pytaxis.models.status import JobState, RunState

JOB_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_]*$")


def as_timedelta(value: float | timedelta | None) -> timedelta | None:
    """Normalize seconds or a timedelta into a timedelta."""
    if value is None or isinstance(value, timedelta):
        return value
    return timedelta(seconds=value)


@dataclass(frozen=True)
class Schedule:
    """
    When a job fires. Exactly one trigger kind should be set.

    Example:
        Schedule(cron="*/5 * * * *")
        Schedule(every=timedelta(minutes=10))
        Schedule(at=datetime(2030, 1, 1, tzinfo=UTC))
        Schedule(in_=30)                      # 30 seconds from insertion
        Schedule(on_event="orders.created")
    """

    cron: str | tuple[str, ...] | None = None
    """One or more cron expressions; the earliest next fire time wins."""

    every: timedelta | None = None
    """Fixed interval between runs."""

    at: datetime | None = None
    """One-shot absolute time."""

    in_: timedelta | None = None
    """One-shot relative delay, measured from when the job is inserted."""

    on_event: str | None = None
    """Fire only when this event name is emitted."""

    def __post_init__(self) -> None:
        object.__setattr__(self, "every", as_timedelta(self.every))
        object.__setattr__(self, "in_", as_timedelta(self.in_))
        if self.at is not None and self.at.tzinfo is None:
            object.__setattr__(self, "at", self.at.replace(tzinfo=UTC))
        if isinstance(self.cron, list):
            object.__setattr__(self, "cron", tuple(self.cron))

    @property
    def kind(self) -> str | None:
        for name in ("cron", "every", "at", "in_", "on_event"):
            if getattr(self, name) is not None:
                return name.rstrip("_")
        return None

    @property
    def is_one_shot(self) -> bool:
        return self.at is not None or self.in_ is not None

    @property
    def cron_expressions(self) -> tuple[str, ...]:
        if self.cron is None:
            return ()
        if isinstance(self.cron, str):
            return (self.cron,)
        return tuple(self.cron)


@dataclass
class Job:
    """A named, scheduled unit of work."""

    name: str
    """Unique name matching ``^[a-z][a-z0-9_]*$``."""

    func: Callable[..., Any] | None = None
    """Callable to run. Mutually exclusive with ``workflow``."""

    workflow: str | None = None
    """Name of a registered workflow to start instead of ``func``."""

    args: tuple = ()
    kwargs: dict[str, Any] = field(default_factory=dict)

    schedule: Schedule = field(default_factory=Schedule)
    queue: str = "default"
    priority: int = 0
    """0 (highest) to 9 (lowest); lower values dequeue first."""

    max_retries: int = 3
    retry_delay: float = 5.0
    retry_backoff: Backoff = Backoff.EXPONENTIAL
    timeout: float | None = 60.0
    """Seconds a single run may take before it is treated as a timeout."""

    state: JobState = JobState.ACTIVE
    enabled: bool = True
    paused: bool = False
    tags: tuple[str, ...] = ()
    meta: dict[str, Any] = field(default_factory=dict)

    run_count: int = 0
    error_count: int = 0
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None
    last_result: Any = None
    last_error: str | None = None
    inserted_at: datetime | None = None

    @property
    def runnable(self) -> bool:
        return self.enabled and not self.paused and self.state == JobState.ACTIVE

    def is_due(self, now: datetime) -> bool:
        return self.runnable and self.next_run_at is not None and self.next_run_at <= now

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retries,
            delay=self.retry_delay,
            max_delay=None,
            backoff=self.retry_backoff,
        )

    def validate(self) -> list[str]:
        """Problems that make this job invalid; empty when valid."""
        problems: list[str] = []
        if not JOB_NAME_PATTERN.match(self.name or ""):
            problems.append(f"name {self.name!r} must match {JOB_NAME_PATTERN.pattern}")
        if (self.func is None) == (self.workflow is None):
            problems.append("exactly one of func or workflow must be set")
        if not 0 <= self.priority <= 9:
            problems.append(f"priority {self.priority} must be between 0 and 9")
        if self.max_retries < 0:
            problems.append("max_retries must be >= 0")
        if self.schedule.kind is None:
            problems.append("schedule must set one of cron, every, at, in_, on_event")
        return problems

    def __repr__(self) -> str:
        return (
            f"Job(name={self.name!r}, queue={self.queue!r}, "
            f"schedule={self.schedule.kind}, state={self.state}, "
            f"next_run_at={self.next_run_at})"
        )


@dataclass
class JobExecution:
    """One run of a job, recorded in the execution history."""

    id: UUID
    job_name: str
    queue: str
    attempt: int
    state: RunState
    started_at: datetime
    finished_at: datetime | None = None
    result: Any = None
    error: str | None = None

    @property
    def duration_ms(self) -> int | None:
        if self.finished_at is None:
            return None
        return int((self.finished_at - self.started_at).total_seconds() * 1000)
