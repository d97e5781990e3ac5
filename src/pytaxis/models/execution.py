"""Workflow execution records.

``Execution`` is the mutable record owned by one execution loop in the
engine. Nothing outside that loop writes to it. Callers get an
``ExecutionInfo`` snapshot from ``WorkflowEngine.get_state``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from pytaxis.models.status import ExecutionState, StepState


@dataclass
class Execution:
    """One running (or finished) workflow instance."""

    id: UUID
    workflow_name: str
    state: ExecutionState = ExecutionState.PENDING
    context: dict[str, Any] = field(default_factory=dict)
    """Accumulating context, keyed by each step's context_key."""

    completed_steps: list[str] = field(default_factory=list)
    """Completed step names in completion order (rollback walks it backwards)."""

    step_states: dict[str, StepState] = field(default_factory=dict)
    step_attempts: dict[str, int] = field(default_factory=dict)
    step_errors: dict[str, str] = field(default_factory=dict)
    skip_reasons: dict[str, str] = field(default_factory=dict)
    rollback_errors: dict[str, str] = field(default_factory=dict)

    error: BaseException | None = None
    failed_step: str | None = None
    cancel_reason: str | None = None
    parent_id: UUID | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def progress(self) -> float:
        """Fraction of known steps in a terminal state."""
        if not self.step_states:
            return 0.0
        done = sum(1 for s in self.step_states.values() if s.is_terminal)
        return done / len(self.step_states)

    @property
    def running_steps(self) -> list[str]:
        return [name for name, s in self.step_states.items() if s == StepState.RUNNING]

    @property
    def duration_ms(self) -> int | None:
        if self.started_at is None:
            return None
        end = self.finished_at or datetime.now(UTC)
        return int((end - self.started_at).total_seconds() * 1000)

    def snapshot(self) -> ExecutionInfo:
        running = self.running_steps
        return ExecutionInfo(
            id=self.id,
            workflow_name=self.workflow_name,
            state=self.state,
            current_step=running[0] if running else None,
            progress=self.progress,
            context=dict(self.context),
            completed_steps=list(self.completed_steps),
            step_states=dict(self.step_states),
            step_attempts=dict(self.step_attempts),
            error=str(self.error) if self.error is not None else None,
            rollback_errors=dict(self.rollback_errors),
            started_at=self.started_at,
            finished_at=self.finished_at,
            duration_ms=self.duration_ms,
        )


@dataclass(frozen=True)
class ExecutionInfo:
    """Read-only view of an execution at one point in time."""

    id: UUID
    workflow_name: str
    state: ExecutionState
    current_step: str | None
    progress: float
    context: dict[str, Any]
    completed_steps: list[str]
    step_states: dict[str, StepState]
    step_attempts: dict[str, int]
    error: str | None
    rollback_errors: dict[str, str]
    started_at: datetime | None
    finished_at: datetime | None
    duration_ms: int | None
