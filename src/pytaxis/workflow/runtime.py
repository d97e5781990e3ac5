"""
Per-execution step arena.

An ExecutionRuntime owns the live set of steps for one execution. It
starts as a copy of the definition's steps in execution order and only
ever grows: graft expansions append new step records here, leaving the
shared Workflow untouched.

All methods are synchronous and are called only from the execution's
own loop in the engine.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator

from pytaxis.models.execution import Execution
from pytaxis.models.status import StepState
from pytaxis.workflow.definition import Workflow
from pytaxis.workflow.errors import InvalidStep
from pytaxis.workflow.outcome import ExpandedStep
from pytaxis.workflow.step import STEP_OPTIONS, OnError, Step

logger = logging.getLogger(__name__)


class ExecutionRuntime:
    """Live step records for one execution."""

    def __init__(self, workflow: Workflow, execution: Execution):
        assert workflow.execution_order is not None, "workflow must be built"
        self.workflow = workflow
        self.execution = execution
        self.steps: dict[str, Step] = {
            name: workflow.steps[name] for name in workflow.execution_order
        }
        self.groups: dict[str, list[str]] = {g: list(m) for g, m in workflow.groups.items()}
        self.expansions: dict[str, list[str]] = {}
        self.expanded_by: dict[str, str] = {}
        for name in self.steps:
            execution.step_states[name] = StepState.PENDING
            execution.step_attempts[name] = 0

    def __iter__(self) -> Iterator[str]:
        return iter(self.steps)

    def state(self, name: str) -> StepState:
        return self.execution.step_states[name]

    def set_state(self, name: str, state: StepState) -> None:
        self.execution.step_states[name] = state

    def names_in(self, *states: StepState) -> list[str]:
        return [name for name in self.steps if self.state(name) in states]

    @property
    def all_terminal(self) -> bool:
        return all(self.state(name).is_terminal for name in self.steps)

    # =========================================================================
    # Dependency evaluation
    # =========================================================================

    def _ok(self, name: str) -> bool:
        """Completed, skipped, or failed under the skip policy."""
        state = self.state(name)
        if state.is_satisfied:
            return True
        return state == StepState.FAILED and self.steps[name].on_error == OnError.SKIP

    def _graft_resolved(self, graft: str) -> bool:
        if not self._ok(graft):
            return False
        return all(self.state(n).is_terminal for n in self.expansions.get(graft, []))

    def is_eligible(self, name: str) -> bool:
        """True when every dependency of ``name`` allows it to dispatch."""
        step = self.steps[name]
        if not all(self._ok(dep) for dep in step.after):
            return False
        for group in step.after_group:
            if not all(self._ok(member) for member in self.groups.get(group, [])):
                return False
        if not all(self._graft_resolved(graft) for graft in step.after_graft):
            return False
        if step.after_any and not any(self._ok(dep) for dep in step.after_any):
            return False
        return True

    # =========================================================================
    # Graft expansion
    # =========================================================================

    def expand(self, graft: str, expanded: tuple[ExpandedStep, ...]) -> list[str]:
        """Append expansion steps after ``graft``. Returns their names.

        Raises:
            InvalidStep: A name collides with an existing step or an option
                is unknown. Nothing is added in that case.
        """
        new_steps: list[Step] = []
        seen: set[str] = set()
        batch = {item.name for item in expanded}
        for item in expanded:
            if item.name in self.steps or item.name in seen:
                raise InvalidStep(f"Graft {graft!r} expanded into duplicate step {item.name!r}")
            unknown = set(item.options) - STEP_OPTIONS
            if unknown:
                raise InvalidStep(f"Unknown options for expanded step {item.name!r}: {unknown}")
            options = self.workflow._with_defaults(item.options)
            after = options.pop("after", None) or ()
            if isinstance(after, str):
                after = (after,)
            options["after"] = (graft, *[a for a in after if a != graft])
            step = Step(name=item.name, job=item.job, **options)

            refs = (*step.after, *step.after_any, *step.after_graft)
            unresolved = [r for r in refs if r not in self.steps and r not in batch]
            if unresolved:
                raise InvalidStep(f"Expanded step {item.name!r} depends on unknown {unresolved}")
            new_steps.append(step)
            seen.add(item.name)

        names: list[str] = []
        for step in new_steps:
            self.steps[step.name] = step
            self.execution.step_states[step.name] = StepState.PENDING
            self.execution.step_attempts[step.name] = 0
            self.expanded_by[step.name] = graft
            if step.group is not None:
                self.groups.setdefault(step.group, []).append(step.name)
            names.append(step.name)

        self.expansions.setdefault(graft, []).extend(names)
        logger.debug(f"Graft {graft!r} expanded into {names}")
        return names
