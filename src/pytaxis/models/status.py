"""Status enumerations for executions, steps and scheduler jobs.

Lifecycles:
    Execution: PENDING → RUNNING ⇄ PAUSED → COMPLETED/FAILED/CANCELLED
    Step:      PENDING → READY → RUNNING → COMPLETED/FAILED/SKIPPED/CANCELLED
               (AWAITING while an approval gate holds the step)
    Job:       ACTIVE ⇄ PAUSED, DISABLED
    Run:       RUNNING → COMPLETED/FAILED/CANCELLED (one history row per attempt)
"""

from enum import Enum


class ExecutionState(Enum):
    """State of one workflow execution."""

    PENDING = "pending"
    """Created but the execution loop has not started."""

    RUNNING = "running"
    """Steps are being dispatched."""

    PAUSED = "paused"
    """No new steps dispatch until resume (manual pause or approval gate)."""

    COMPLETED = "completed"
    """All steps terminal and none failed under the fail policy."""

    FAILED = "failed"
    """A step failed under the fail policy; rollback has run."""

    CANCELLED = "cancelled"
    """Cancelled by the caller."""

    @property
    def is_terminal(self) -> bool:
        return self in (
            ExecutionState.COMPLETED,
            ExecutionState.FAILED,
            ExecutionState.CANCELLED,
        )

    def __str__(self) -> str:
        return self.value


class StepState(Enum):
    """State of one step inside an execution."""

    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    AWAITING = "awaiting"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            StepState.COMPLETED,
            StepState.FAILED,
            StepState.SKIPPED,
            StepState.CANCELLED,
        )

    @property
    def is_satisfied(self) -> bool:
        """Whether downstream ``after`` dependencies may proceed."""
        return self in (StepState.COMPLETED, StepState.SKIPPED)

    def __str__(self) -> str:
        return self.value


class JobState(Enum):
    """Lifecycle state of a scheduler job."""

    ACTIVE = "active"
    PAUSED = "paused"
    DISABLED = "disabled"

    def __str__(self) -> str:
        return self.value


class RunState(Enum):
    """Outcome of one job run recorded in the execution history."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self != RunState.RUNNING

    def __str__(self) -> str:
        return self.value
