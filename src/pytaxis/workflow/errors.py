"""Workflow definition and execution errors.

Definition errors (MissingDependencies, InvalidStep) surface from
``Workflow.build`` and are never retried. Step errors (StepError and its
subclasses) are produced at the step-dispatch boundary and flow through
the retry policy; they carry a ``reason`` that ``retry_on`` /
``no_retry_on`` entries can match.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

from pytaxis.errors import PytaxisError


class WorkflowError(PytaxisError):
    """Base class for workflow errors."""

    pass


class InvalidStep(WorkflowError):
    """A step declaration is malformed (duplicate name, bad option)."""

    pass


class MissingDependencies(WorkflowError):
    """Steps reference dependencies that are not defined.

    Attributes:
        missing: step name -> unresolved references, e.g.
            ``{"load": ["transform", "group:validators"]}``
    """

    def __init__(self, missing: dict[str, list[str]]):
        self.missing = missing
        details = "; ".join(f"{step} -> {', '.join(refs)}" for step, refs in missing.items())
        super().__init__(f"Missing dependencies: {details}")


class WorkflowNotFound(WorkflowError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Workflow {name!r} is not registered")


class ExecutionNotFound(WorkflowError):
    def __init__(self, execution_id: UUID | str):
        self.execution_id = execution_id
        super().__init__(f"Execution {execution_id} not found")


class InvalidStateTransition(WorkflowError):
    def __init__(self, execution_id: UUID, state: Any, action: str):
        self.execution_id = execution_id
        self.state = state
        self.action = action
        super().__init__(f"Cannot {action} execution {execution_id} in state {state}")


class StepError(WorkflowError):
    """A step job reported failure.

    Attributes:
        step: Step name
        reason: Machine-readable reason (a value from ``Failed(reason)``,
            ``"timeout"``, ``"child_failed"``, ...)
    """

    def __init__(self, step: str, reason: Any, message: str | None = None):
        self.step = step
        self.reason = reason
        super().__init__(message or f"Step {step!r} failed: {reason}")


class StepTimeoutError(StepError):
    def __init__(self, step: str, timeout: float):
        self.timeout = timeout
        super().__init__(step, "timeout", f"Step {step!r} timed out after {timeout}s")


class ChildWorkflowFailed(StepError):
    def __init__(self, step: str, child_id: UUID, child_error: str | None):
        self.child_id = child_id
        super().__init__(
            step,
            "child_failed",
            f"Nested workflow for step {step!r} ({child_id}) did not complete: {child_error}",
        )


class WorkflowTimeoutError(WorkflowError):
    def __init__(self, execution_id: UUID, timeout: float):
        self.execution_id = execution_id
        self.timeout = timeout
        self.reason = "timeout"
        super().__init__(f"Execution {execution_id} exceeded workflow timeout of {timeout}s")
