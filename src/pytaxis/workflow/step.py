"""
Step declarations.

A Step is the unit of work in a workflow: a job callable plus dependency,
retry, timeout and rollback settings. Steps are immutable once declared;
per-execution state (attempts, status) lives in the execution record.

Dependency kinds:
    - after: every listed step is completed or skipped
    - after_any: at least one listed step is completed or skipped
    - after_group: every member of each listed group is satisfied
    - after_graft: the graft has run and all its expansions are terminal

Only ``after``, ``after_group`` and ``after_graft`` are structural (they
become graph edges). ``after_any`` is evaluated by the engine.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pytaxis.models.retry import Backoff, BackoffFn, RetryPolicy

logger = logging.getLogger(__name__)

Job = Callable[[dict[str, Any]], Any]
Rollback = Callable[[dict[str, Any]], Any]
Condition = Callable[[dict[str, Any]], bool]

DEFAULT_STEP_TIMEOUT = 300.0
DEFAULT_STEP_MAX_RETRIES = 3
DEFAULT_STEP_RETRY_DELAY = 1.0
DEFAULT_STEP_RETRY_MAX_DELAY = 60.0


class OnError(Enum):
    """What happens when a step fails after its retries."""

    FAIL = "fail"
    """Fail the execution and roll back completed steps."""

    SKIP = "skip"
    """Mark the step failed; dependents still run."""

    CONTINUE = "continue"
    """Treat the step as completed with no context contribution."""

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class DependencyRef:
    """One entry in a step's adjacency list."""

    kind: str
    """``"step"``, ``"group"`` or ``"graft"``."""

    name: str

    def __str__(self) -> str:
        return self.name if self.kind == "step" else f"{self.kind}:{self.name}"


def _names(value: str | Sequence[str] | None) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(value)


@dataclass(frozen=True)
class Step:
    """A declared workflow step."""

    name: str
    job: Job | None
    after: tuple[str, ...] = ()
    after_any: tuple[str, ...] = ()
    after_group: tuple[str, ...] = ()
    after_graft: tuple[str, ...] = ()
    group: str | None = None
    when: Condition | None = None

    timeout: float | None = DEFAULT_STEP_TIMEOUT
    """Seconds per attempt; None disables the timer."""

    max_retries: int = DEFAULT_STEP_MAX_RETRIES
    retry_delay: float = DEFAULT_STEP_RETRY_DELAY
    retry_max_delay: float | None = DEFAULT_STEP_RETRY_MAX_DELAY
    retry_backoff: Backoff | BackoffFn = Backoff.EXPONENTIAL
    retry_jitter: bool = False
    retry_on: tuple[Any, ...] = ()
    no_retry_on: tuple[Any, ...] = ()

    on_error: OnError = OnError.FAIL
    rollback: Rollback | None = None
    await_approval: bool = False
    context_key: str = ""
    is_graft: bool = False
    workflow: str | None = None
    """Name of a nested workflow run as a child execution."""

    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.context_key:
            object.__setattr__(self, "context_key", self.name)
        for attr in ("after", "after_any", "after_group", "after_graft"):
            object.__setattr__(self, attr, _names(getattr(self, attr)))
        for attr in ("retry_on", "no_retry_on"):
            value = getattr(self, attr)
            if not isinstance(value, tuple):
                object.__setattr__(self, attr, tuple(value) if isinstance(value, list) else (value,))
        if isinstance(self.on_error, str):
            object.__setattr__(self, "on_error", OnError(self.on_error))
        if isinstance(self.retry_backoff, str):
            object.__setattr__(self, "retry_backoff", Backoff(self.retry_backoff))

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retries,
            delay=self.retry_delay,
            max_delay=self.retry_max_delay,
            backoff=self.retry_backoff,
            jitter=self.retry_jitter,
            retry_on=self.retry_on,
            no_retry_on=self.no_retry_on,
        )

    @property
    def dependencies(self) -> list[DependencyRef]:
        """Structural dependencies (everything except after_any)."""
        return (
            [DependencyRef("step", n) for n in self.after]
            + [DependencyRef("group", n) for n in self.after_group]
            + [DependencyRef("graft", n) for n in self.after_graft]
        )

    @property
    def is_nested(self) -> bool:
        return self.workflow is not None

    def condition_satisfied(self, context: dict[str, Any]) -> bool:
        """Evaluate ``when``. A predicate that raises counts as False."""
        if self.when is None:
            return True
        try:
            return bool(self.when(context))
        except Exception as e:
            logger.warning(f"Condition for step {self.name!r} raised {e!r}; treating as false")
            return False


def is_async_callable(fn: Callable[..., Any]) -> bool:
    """True for coroutine functions, including callables with an async __call__."""
    if inspect.iscoroutinefunction(fn):
        return True
    call = getattr(fn, "__call__", None)
    return call is not None and inspect.iscoroutinefunction(call)


STEP_OPTIONS = frozenset(
    {
        "after",
        "after_any",
        "after_group",
        "after_graft",
        "group",
        "when",
        "timeout",
        "max_retries",
        "retry_delay",
        "retry_max_delay",
        "retry_backoff",
        "retry_jitter",
        "retry_on",
        "no_retry_on",
        "on_error",
        "rollback",
        "await_approval",
        "context_key",
        "metadata",
    }
)
