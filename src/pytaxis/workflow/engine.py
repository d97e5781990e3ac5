"""
Workflow execution engine.

Design Pattern: State Machine + Template Method
Each execution is driven by one asyncio task (its "loop") that owns the
execution record exclusively. Step jobs run in their own tasks and hand
back an _AttemptResult; only the loop applies results, so the context,
step states and attempt counters have a single writer.

Execution states:
    PENDING → RUNNING → COMPLETED / FAILED / CANCELLED
    RUNNING ⇄ PAUSED (pause/resume, or an await_approval gate)

The loop waits on ``asyncio.wait(FIRST_COMPLETED)`` over the in-flight
step tasks plus a wake-up event set by pause/resume/cancel. No new step is
dispatched once a pause, cancel or failure has been observed.

Example:
    ```python
    engine = WorkflowEngine(config=EngineConfig().with_step_concurrency(10))
    await engine.register(workflow)

    execution_id = await engine.start("etl", {"date": "2024-01-01"})
    info = await engine.wait(execution_id)
    print(info.state, info.context)
    ```
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import os
import time
import traceback
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any
from uuid import UUID

from uuid_extensions import uuid7

from pytaxis import telemetry as telemetry_module
from pytaxis.models.execution import Execution, ExecutionInfo
from pytaxis.models.retry import RetryPolicy
from pytaxis.models.status import ExecutionState, StepState
from pytaxis.telemetry import Telemetry
from pytaxis.workflow.definition import Workflow
from pytaxis.workflow.errors import (
    ChildWorkflowFailed,
    ExecutionNotFound,
    InvalidStateTransition,
    InvalidStep,
    StepError,
    StepTimeoutError,
    WorkflowNotFound,
    WorkflowTimeoutError,
)
from pytaxis.workflow.outcome import Expand, Failed, Skip
from pytaxis.workflow.runtime import ExecutionRuntime
from pytaxis.workflow.step import OnError, Step, is_async_callable

if TYPE_CHECKING:
    from pytaxis.deadletter import DeadLetterQueue
    from pytaxis.storage.base import JobStore

logger = logging.getLogger(__name__)


# =============================================================================
# Configuration
# =============================================================================


@dataclass
class EngineConfig:
    """Engine-wide limits."""

    step_concurrency: int = 5
    """Steps one execution may have in flight at once."""

    max_concurrent_steps: int = 100
    """Step jobs running at once across all executions."""

    max_concurrent_executions: int | None = None
    """Executions running at once (None: unbounded)."""

    retain_finished: int = 1000
    """Finished executions kept in memory for get_state."""

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Read PYTAXIS_STEP_CONCURRENCY, PYTAXIS_MAX_STEPS, PYTAXIS_MAX_EXECUTIONS."""
        config = cls()
        if value := os.environ.get("PYTAXIS_STEP_CONCURRENCY"):
            config.step_concurrency = int(value)
        if value := os.environ.get("PYTAXIS_MAX_STEPS"):
            config.max_concurrent_steps = int(value)
        if value := os.environ.get("PYTAXIS_MAX_EXECUTIONS"):
            config.max_concurrent_executions = int(value)
        return config

    def with_step_concurrency(self, limit: int) -> EngineConfig:
        if limit < 1:
            raise ValueError("step_concurrency must be >= 1")
        self.step_concurrency = limit
        return self

    def with_max_concurrent_steps(self, limit: int) -> EngineConfig:
        if limit < 1:
            raise ValueError("max_concurrent_steps must be >= 1")
        self.max_concurrent_steps = limit
        return self

    def with_max_concurrent_executions(self, limit: int | None) -> EngineConfig:
        self.max_concurrent_executions = limit
        return self


# =============================================================================
# Internal records
# =============================================================================


@dataclass
class _AttemptResult:
    step: str
    attempt: int
    kind: str
    """ok, skip, expand or error."""

    value: Any = None
    error: BaseException | None = None
    stacktrace: str | None = None
    started: float = 0.0


@dataclass
class _Handle:
    """Control block for one execution, shared between the loop and callers."""

    execution: Execution
    workflow: Workflow
    initial_context: dict[str, Any]
    wakeup: asyncio.Event = field(default_factory=asyncio.Event)
    done: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task | None = None
    runtime: ExecutionRuntime | None = None
    step_tasks: dict[str, asyncio.Task] = field(default_factory=dict)
    approved: set[str] = field(default_factory=set)
    pause_requested: bool = False
    cancel_request: tuple[str, bool] | None = None
    run_at: datetime | None = None

    def wake(self) -> None:
        self.wakeup.set()


class WorkflowEngine:
    """Runs workflow executions."""

    def __init__(
        self,
        store: JobStore | None = None,
        config: EngineConfig | None = None,
        dead_letter: DeadLetterQueue | None = None,
        telemetry: Telemetry | None = None,
    ):
        self._store = store
        self._config = config or EngineConfig()
        self._dead_letter = dead_letter
        self._telemetry = telemetry or telemetry_module.default
        self._workflows: dict[str, Workflow] = {}
        self._handles: dict[UUID, _Handle] = {}
        self._finished: list[UUID] = []
        self._step_slots = asyncio.Semaphore(self._config.max_concurrent_steps)
        self._execution_slots = (
            asyncio.Semaphore(self._config.max_concurrent_executions)
            if self._config.max_concurrent_executions
            else None
        )

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def dead_letter(self) -> DeadLetterQueue | None:
        return self._dead_letter

    def attach_dead_letter(self, dead_letter: DeadLetterQueue) -> None:
        self._dead_letter = dead_letter

    # =========================================================================
    # Definitions
    # =========================================================================

    async def register(self, workflow: Workflow) -> Workflow:
        """Build ``workflow`` and make it startable by name."""
        workflow.build()
        self._workflows[workflow.name] = workflow
        if self._store is not None:
            await self._store.register_workflow(workflow)
        logger.debug(f"Registered workflow {workflow.name!r}")
        return workflow

    async def get_workflow(self, name: str) -> Workflow:
        workflow = self._workflows.get(name)
        if workflow is None and self._store is not None:
            workflow = await self._store.get_workflow(name)
            if workflow is not None:
                self._workflows[name] = workflow.build()
        if workflow is None:
            raise WorkflowNotFound(name)
        return workflow

    def workflows(self) -> list[str]:
        return list(self._workflows)

    # =========================================================================
    # Control surface
    # =========================================================================

    async def start(
        self,
        workflow: str | Workflow,
        context: dict[str, Any] | None = None,
        *,
        parent_id: UUID | None = None,
    ) -> UUID:
        """Start an execution and return its id immediately."""
        return await self._launch(workflow, context, parent_id=parent_id, run_at=None)

    async def schedule_execution(
        self,
        workflow: str | Workflow,
        context: dict[str, Any] | None = None,
        *,
        at: datetime | None = None,
        in_: float | timedelta | None = None,
    ) -> UUID:
        """Create an execution that starts at ``at`` or after ``in_``.

        The execution stays PENDING until then and can be cancelled.
        """
        if (at is None) == (in_ is None):
            raise ValueError("schedule_execution needs exactly one of at or in_")
        if in_ is not None:
            delta = in_ if isinstance(in_, timedelta) else timedelta(seconds=in_)
            at = datetime.now(UTC) + delta
        return await self._launch(workflow, context, parent_id=None, run_at=at)

    async def run(
        self,
        workflow: str | Workflow,
        context: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> ExecutionInfo:
        """Start an execution and wait for its terminal state."""
        execution_id = await self.start(workflow, context)
        return await self.wait(execution_id, timeout=timeout)

    async def wait(self, execution_id: UUID, timeout: float | None = None) -> ExecutionInfo:
        """Wait for a terminal state. Raises asyncio.TimeoutError on timeout."""
        handle = self._handle(execution_id)
        await asyncio.wait_for(handle.done.wait(), timeout)
        return handle.execution.snapshot()

    async def cancel(
        self, execution_id: UUID, reason: str = "cancelled", rollback: bool = False
    ) -> ExecutionInfo:
        """
        Cancel an execution and wait until it has wound down.

        In-flight step tasks are cancelled (best effort; sync jobs running in
        threads finish in the background). ``on_cancel`` runs exactly once.
        With ``rollback=True`` completed steps are compensated first.
        """
        handle = self._handle(execution_id)
        state = handle.execution.state
        if state.is_terminal:
            raise InvalidStateTransition(execution_id, state, "cancel")
        if handle.cancel_request is None:
            handle.cancel_request = (reason, rollback)
            logger.info(f"Cancelling execution {execution_id}: {reason}")
        handle.wake()
        await handle.done.wait()
        return handle.execution.snapshot()

    async def cancel_all(self, workflow_name: str | None = None, reason: str = "cancelled") -> int:
        targets = [
            h.execution.id
            for h in self._handles.values()
            if not h.execution.state.is_terminal
            and (workflow_name is None or h.execution.workflow_name == workflow_name)
        ]
        for execution_id in targets:
            with contextlib.suppress(InvalidStateTransition):
                await self.cancel(execution_id, reason)
        return len(targets)

    async def pause(self, execution_id: UUID) -> ExecutionInfo:
        """Stop dispatching new steps. In-flight steps run to completion."""
        handle = self._handle(execution_id)
        state = handle.execution.state
        if state not in (ExecutionState.RUNNING, ExecutionState.PENDING):
            raise InvalidStateTransition(execution_id, state, "pause")
        handle.pause_requested = True
        if state == ExecutionState.RUNNING:
            handle.execution.state = ExecutionState.PAUSED
        handle.wake()
        logger.info(f"Paused execution {execution_id}")
        return handle.execution.snapshot()

    async def resume(
        self, execution_id: UUID, context: dict[str, Any] | None = None
    ) -> ExecutionInfo:
        """
        Resume a paused execution, merging ``context`` first.

        Steps held at an approval gate are released and dispatched.
        """
        handle = self._handle(execution_id)
        execution = handle.execution
        if execution.state != ExecutionState.PAUSED and not handle.pause_requested:
            raise InvalidStateTransition(execution_id, execution.state, "resume")
        if context:
            execution.context.update(context)
        if handle.runtime is not None:
            for name in handle.runtime.names_in(StepState.AWAITING):
                handle.approved.add(name)
                handle.runtime.set_state(name, StepState.PENDING)
        handle.pause_requested = False
        if execution.state == ExecutionState.PAUSED:
            execution.state = ExecutionState.RUNNING
        handle.wake()
        logger.info(f"Resumed execution {execution_id}")
        return execution.snapshot()

    def get_state(self, execution_id: UUID) -> ExecutionInfo:
        return self._handle(execution_id).execution.snapshot()

    def get_execution(self, execution_id: UUID) -> Execution:
        return self._handle(execution_id).execution

    def list_running(self, workflow_name: str | None = None) -> list[ExecutionInfo]:
        """Executions that are pending, running or paused."""
        return [
            h.execution.snapshot()
            for h in self._handles.values()
            if not h.execution.state.is_terminal
            and (workflow_name is None or h.execution.workflow_name == workflow_name)
        ]

    async def shutdown(self) -> None:
        """Cancel every unfinished execution."""
        count = await self.cancel_all(reason="shutdown")
        logger.info(f"Workflow engine shut down ({count} executions cancelled)")

    def _handle(self, execution_id: UUID) -> _Handle:
        handle = self._handles.get(execution_id)
        if handle is None:
            raise ExecutionNotFound(execution_id)
        return handle

    # =========================================================================
    # Execution loop
    # =========================================================================

    async def _launch(
        self,
        workflow: str | Workflow,
        context: dict[str, Any] | None,
        parent_id: UUID | None,
        run_at: datetime | None,
    ) -> UUID:
        if isinstance(workflow, Workflow):
            if not workflow.is_built:
                workflow.build()
            self._workflows.setdefault(workflow.name, workflow)
        else:
            workflow = await self.get_workflow(workflow)

        execution = Execution(id=uuid7(), workflow_name=workflow.name, parent_id=parent_id)
        execution.context = dict(context or {})
        handle = _Handle(
            execution=execution,
            workflow=workflow,
            initial_context=dict(context or {}),
            run_at=run_at,
        )
        self._handles[execution.id] = handle
        handle.task = asyncio.create_task(
            self._drive(handle), name=f"pytaxis-execution-{execution.id}"
        )
        return execution.id

    async def _drive(self, handle: _Handle) -> None:
        execution = handle.execution
        try:
            if handle.run_at is not None and not await self._wait_until(handle):
                await self._finish_cancelled(handle)
                return

            # Child executions run inside the parent's slot
            slots = self._execution_slots if execution.parent_id is None else None
            async with slots or contextlib.nullcontext():
                await self._run_with_retries(handle)
        except Exception as e:
            logger.exception(f"Execution {execution.id} crashed")
            execution.error = e
            execution.state = ExecutionState.FAILED
            execution.finished_at = datetime.now(UTC)
        finally:
            handle.done.set()
            self._retire(execution.id)

    async def _wait_until(self, handle: _Handle) -> bool:
        """Sleep until run_at. False if cancelled while waiting."""
        assert handle.run_at is not None
        while handle.cancel_request is None:
            remaining = (handle.run_at - datetime.now(UTC)).total_seconds()
            if remaining <= 0:
                return True
            handle.wakeup.clear()
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(handle.wakeup.wait(), remaining)
        return False

    async def _sleep(self, handle: _Handle, seconds: float) -> bool:
        """Sleep between restart rounds. False if cancelled while waiting."""
        deadline = asyncio.get_running_loop().time() + seconds
        while handle.cancel_request is None:
            remaining = deadline - asyncio.get_running_loop().time()
            if remaining <= 0:
                return True
            handle.wakeup.clear()
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(handle.wakeup.wait(), remaining)
        return False

    async def _run_with_retries(self, handle: _Handle) -> None:
        workflow = handle.workflow
        execution = handle.execution
        restart_policy = RetryPolicy(
            max_retries=workflow.max_retries,
            delay=workflow.retry_delay,
            max_delay=None,
            backoff=workflow.retry_backoff,
        )
        round_ = 0
        while True:
            round_ += 1
            await self._run_once(handle)
            if execution.state != ExecutionState.FAILED or handle.cancel_request is not None:
                break
            delay = restart_policy.delay_for_attempt(round_)
            if delay is None:
                break
            logger.warning(
                f"Execution {execution.id} of {workflow.name!r} failed; "
                f"restarting in {delay:.2f}s (round {round_ + 1})"
            )
            self._reset(handle)
            execution.state = ExecutionState.RUNNING
            if not await self._sleep(handle, delay):
                await self._finish_cancelled(handle)
                return

        if execution.state == ExecutionState.FAILED:
            await self._dead_letter_failure(handle, round_)

    def _reset(self, handle: _Handle) -> None:
        execution = handle.execution
        execution.context = dict(handle.initial_context)
        execution.completed_steps.clear()
        execution.step_states.clear()
        execution.step_attempts.clear()
        execution.step_errors.clear()
        execution.skip_reasons.clear()
        execution.rollback_errors.clear()
        execution.error = None
        execution.failed_step = None
        execution.finished_at = None
        handle.approved.clear()

    async def _run_once(self, handle: _Handle) -> None:
        workflow = handle.workflow
        execution = handle.execution
        runtime = ExecutionRuntime(workflow, execution)
        handle.runtime = runtime

        execution.started_at = execution.started_at or datetime.now(UTC)
        execution.state = ExecutionState.PAUSED if handle.pause_requested else ExecutionState.RUNNING
        started = time.monotonic()
        deadline = started + workflow.timeout if workflow.timeout else None

        logger.info(f"Execution {execution.id} of {workflow.name!r} started")
        self._telemetry.emit(
            "workflow.execution.start",
            {"system_time": time.time()},
            {"execution_id": execution.id, "workflow": workflow.name},
        )

        while True:
            if handle.cancel_request is not None:
                await self._finish_cancelled(handle)
                break

            if execution.failed_step is None and execution.state == ExecutionState.RUNNING:
                self._dispatch_ready(handle)

            if execution.failed_step is not None:
                await self._finish_failed(handle)
                break

            if not handle.step_tasks:
                if runtime.all_terminal:
                    await self._finish_completed(handle)
                    break
                if execution.state == ExecutionState.RUNNING:
                    self._skip_unresolvable(handle)
                    continue

            remaining = None
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    execution.error = WorkflowTimeoutError(execution.id, workflow.timeout or 0)
                    execution.failed_step = execution.failed_step or "<workflow>"
                    continue

            await self._wait_for_progress(handle, remaining)

        self._telemetry.emit(
            "workflow.execution.stop",
            {"duration": time.monotonic() - started},
            {
                "execution_id": execution.id,
                "workflow": workflow.name,
                "state": str(execution.state),
            },
        )

    async def _wait_for_progress(self, handle: _Handle, timeout: float | None) -> None:
        handle.wakeup.clear()
        wakeup_task = asyncio.create_task(handle.wakeup.wait())
        waiting: set[asyncio.Task] = {wakeup_task, *handle.step_tasks.values()}
        try:
            done, _ = await asyncio.wait(waiting, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not wakeup_task.done():
                wakeup_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await wakeup_task

        for name, task in list(handle.step_tasks.items()):
            if task in done:
                del handle.step_tasks[name]
                self._apply_result(handle, name, task)

    def _dispatch_ready(self, handle: _Handle) -> None:
        """Start every eligible step, up to the per-execution bound.

        Repeats while skips (false conditions) unblock further steps.
        """
        runtime = handle.runtime
        execution = handle.execution
        assert runtime is not None

        progressed = True
        while progressed:
            progressed = False
            for name in runtime.names_in(StepState.PENDING):
                if execution.state != ExecutionState.RUNNING:
                    return
                if len(handle.step_tasks) >= self._config.step_concurrency:
                    return
                if not runtime.is_eligible(name):
                    continue

                step = runtime.steps[name]
                if not step.condition_satisfied(execution.context):
                    runtime.set_state(name, StepState.SKIPPED)
                    execution.skip_reasons[name] = "condition_not_met"
                    logger.debug(f"Step {name!r} skipped: condition not met")
                    progressed = True
                    continue

                if step.await_approval and name not in handle.approved:
                    runtime.set_state(name, StepState.AWAITING)
                    execution.state = ExecutionState.PAUSED
                    logger.info(f"Execution {execution.id} awaiting approval for step {name!r}")
                    return

                self._start_attempt(handle, step, attempt=1, delay=0.0)

    def _start_attempt(self, handle: _Handle, step: Step, attempt: int, delay: float) -> None:
        execution = handle.execution
        assert handle.runtime is not None
        handle.runtime.set_state(step.name, StepState.RUNNING)
        execution.step_attempts[step.name] = attempt
        if attempt == 1:
            self._telemetry.emit(
                "workflow.step.start",
                {"system_time": time.time()},
                {"execution_id": execution.id, "step": step.name},
            )
        logger.debug(f"Dispatching step {step.name!r} (attempt {attempt}) in {execution.id}")
        handle.step_tasks[step.name] = asyncio.create_task(
            self._attempt(handle, step, attempt, delay, dict(execution.context)),
            name=f"pytaxis-step-{step.name}",
        )

    async def _attempt(
        self,
        handle: _Handle,
        step: Step,
        attempt: int,
        delay: float,
        context: dict[str, Any],
    ) -> _AttemptResult:
        """Run one attempt of ``step``. Never raises except on cancellation."""
        if delay > 0:
            await asyncio.sleep(delay)

        started = time.monotonic()
        # Nested steps only wait on their child; its own steps take the permits
        slots = None if step.is_nested else self._step_slots
        try:
            async with slots or contextlib.nullcontext():
                if step.timeout is None:
                    value = await self._invoke(handle, step, context)
                else:
                    try:
                        value = await asyncio.wait_for(
                            self._invoke(handle, step, context), step.timeout
                        )
                    except TimeoutError as e:
                        raise StepTimeoutError(step.name, step.timeout) from e
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return _AttemptResult(
                step.name,
                attempt,
                "error",
                error=e,
                stacktrace=traceback.format_exc(),
                started=started,
            )

        if isinstance(value, Failed):
            error = StepError(step.name, value.reason, value.message)
            return _AttemptResult(step.name, attempt, "error", error=error, started=started)
        if isinstance(value, Skip):
            return _AttemptResult(step.name, attempt, "skip", value=value.reason, started=started)
        if isinstance(value, Expand):
            if not step.is_graft:
                error = StepError(step.name, "unexpected_expand", f"Step {step.name!r} is not a graft")
                return _AttemptResult(step.name, attempt, "error", error=error, started=started)
            return _AttemptResult(step.name, attempt, "expand", value=value, started=started)
        return _AttemptResult(step.name, attempt, "ok", value=value, started=started)

    async def _invoke(self, handle: _Handle, step: Step, context: dict[str, Any]) -> Any:
        if step.workflow is not None:
            return await self._run_child(handle, step, context)

        assert step.job is not None
        if is_async_callable(step.job):
            return await step.job(context)
        result = await asyncio.to_thread(step.job, context)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _run_child(self, handle: _Handle, step: Step, context: dict[str, Any]) -> Any:
        assert step.workflow is not None
        child_id = await self.start(step.workflow, context, parent_id=handle.execution.id)
        logger.info(f"Step {step.name!r} started child execution {child_id} ({step.workflow})")
        try:
            info = await self.wait(child_id)
        except asyncio.CancelledError:
            child = self._handles.get(child_id)
            if child is not None and not child.execution.state.is_terminal:
                child.cancel_request = ("parent_cancelled", False)
                child.wake()
            raise
        if info.state != ExecutionState.COMPLETED:
            raise ChildWorkflowFailed(step.name, child_id, info.error or str(info.state))
        return info.context

    # =========================================================================
    # Result handling (loop only)
    # =========================================================================

    def _apply_result(self, handle: _Handle, name: str, task: asyncio.Task) -> None:
        runtime = handle.runtime
        execution = handle.execution
        assert runtime is not None
        step = runtime.steps[name]

        if task.cancelled():
            runtime.set_state(name, StepState.CANCELLED)
            return

        result: _AttemptResult = task.result()
        metadata = {"execution_id": execution.id, "step": name, "attempt": result.attempt}
        duration = time.monotonic() - result.started

        if result.kind == "expand":
            try:
                names = runtime.expand(name, result.value.steps)
            except InvalidStep as e:
                result = _AttemptResult(name, result.attempt, "error", error=e, started=result.started)
            else:
                self._complete(handle, step, {"expanded": names})
                self._telemetry.emit("workflow.step.stop", {"duration": duration}, metadata)
                return

        if result.kind == "ok":
            self._complete(handle, step, result.value)
            self._telemetry.emit("workflow.step.stop", {"duration": duration}, metadata)
            return

        if result.kind == "skip":
            runtime.set_state(name, StepState.SKIPPED)
            execution.skip_reasons[name] = str(result.value)
            self._telemetry.emit("workflow.step.stop", {"duration": duration}, metadata)
            return

        error = result.error
        assert error is not None
        self._telemetry.emit(
            "workflow.step.exception",
            {"duration": duration},
            {**metadata, "kind": type(error).__name__, "reason": str(error)},
        )
        self._spawn_hook(
            handle.workflow.on_step_error, dict(execution.context), name, error, result.attempt
        )

        policy = step.retry_policy
        delay = policy.delay_for_attempt(result.attempt) if policy.should_retry(error) else None
        if delay is not None and handle.cancel_request is None:
            logger.warning(
                f"Step {name!r} attempt {result.attempt} failed: {error}; "
                f"retrying in {delay:.2f}s"
            )
            self._start_attempt(handle, step, result.attempt + 1, delay)
            return

        execution.step_errors[name] = str(error)
        if step.on_error == OnError.FAIL:
            logger.error(f"Step {name!r} failed after {result.attempt} attempt(s): {error}")
            runtime.set_state(name, StepState.FAILED)
            if execution.failed_step is None:
                execution.failed_step = name
                execution.error = error
        elif step.on_error == OnError.SKIP:
            logger.warning(f"Step {name!r} failed and is skipped: {error}")
            runtime.set_state(name, StepState.FAILED)
        else:
            logger.warning(f"Step {name!r} failed; continuing without its result: {error}")
            runtime.set_state(name, StepState.COMPLETED)

    def _complete(self, handle: _Handle, step: Step, value: Any) -> None:
        assert handle.runtime is not None
        execution = handle.execution
        handle.runtime.set_state(step.name, StepState.COMPLETED)
        execution.completed_steps.append(step.name)
        if value is not None:
            execution.context[step.context_key] = value
        logger.debug(f"Step {step.name!r} completed in {execution.id}")

    def _skip_unresolvable(self, handle: _Handle) -> None:
        runtime = handle.runtime
        assert runtime is not None
        stuck = runtime.names_in(StepState.PENDING, StepState.READY)
        for name in stuck:
            runtime.set_state(name, StepState.SKIPPED)
            handle.execution.skip_reasons[name] = "unresolvable_dependencies"
        if stuck:
            logger.warning(
                f"Execution {handle.execution.id}: skipping steps with unresolvable "
                f"dependencies: {stuck}"
            )

    # =========================================================================
    # Terminal transitions
    # =========================================================================

    async def _stop_steps(self, handle: _Handle) -> None:
        """Cancel in-flight step tasks and mark unfinished steps cancelled."""
        tasks = list(handle.step_tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        handle.step_tasks.clear()

        runtime = handle.runtime
        if runtime is None:
            return
        for name in runtime.names_in(
            StepState.PENDING, StepState.READY, StepState.RUNNING, StepState.AWAITING
        ):
            runtime.set_state(name, StepState.CANCELLED)

    async def _rollback(self, handle: _Handle) -> None:
        """Compensate completed steps in reverse completion order.

        Best effort: every rollback runs, failures are collected in
        ``execution.rollback_errors``.
        """
        execution = handle.execution
        runtime = handle.runtime
        assert runtime is not None
        for name in reversed(execution.completed_steps):
            step = runtime.steps[name]
            if step.rollback is None:
                continue
            try:
                result = step.rollback(dict(execution.context))
                if inspect.isawaitable(result):
                    await result
                logger.info(f"Rolled back step {name!r} in {execution.id}")
            except Exception as e:
                execution.rollback_errors[name] = repr(e)
                logger.error(f"Rollback of step {name!r} in {execution.id} failed: {e!r}")

    async def _finish_completed(self, handle: _Handle) -> None:
        execution = handle.execution
        execution.state = ExecutionState.COMPLETED
        execution.finished_at = datetime.now(UTC)
        logger.info(
            f"Execution {execution.id} of {execution.workflow_name!r} completed "
            f"in {execution.duration_ms}ms"
        )
        await self._call_hook(handle.workflow.on_success, dict(execution.context))

    async def _finish_failed(self, handle: _Handle) -> None:
        execution = handle.execution
        await self._stop_steps(handle)
        execution.state = ExecutionState.FAILED
        execution.finished_at = datetime.now(UTC)
        logger.error(
            f"Execution {execution.id} of {execution.workflow_name!r} failed at "
            f"step {execution.failed_step!r}: {execution.error}"
        )
        await self._call_hook(handle.workflow.on_failure, dict(execution.context), execution.error)
        await self._rollback(handle)

    async def _finish_cancelled(self, handle: _Handle) -> None:
        execution = handle.execution
        assert handle.cancel_request is not None
        reason, rollback = handle.cancel_request
        await self._stop_steps(handle)
        if rollback and handle.runtime is not None:
            await self._rollback(handle)
        execution.state = ExecutionState.CANCELLED
        execution.cancel_reason = reason
        execution.finished_at = datetime.now(UTC)
        logger.info(f"Execution {execution.id} cancelled: {reason}")
        await self._call_hook(handle.workflow.on_cancel, dict(execution.context), reason)

    async def _dead_letter_failure(self, handle: _Handle, rounds: int) -> None:
        workflow = handle.workflow
        execution = handle.execution
        if not workflow.dead_letter or self._dead_letter is None:
            return
        error = execution.error or RuntimeError("execution failed")
        meta: dict[str, Any] = {
            "execution_id": str(execution.id),
            "failed_step": execution.failed_step,
            "step_errors": dict(execution.step_errors),
        }
        if workflow.dead_letter_ttl is not None:
            meta["expires_at"] = datetime.now(UTC) + timedelta(seconds=workflow.dead_letter_ttl)
        await self._dead_letter.insert_failure(
            job_name=workflow.name,
            queue=workflow.queue,
            workflow=workflow.name,
            kwargs={"context": dict(handle.initial_context)},
            error=error,
            attempts=rounds,
            meta=meta,
        )

    # =========================================================================
    # Hooks
    # =========================================================================

    async def _call_hook(self, hook: Callable[..., Any] | None, *args: Any) -> None:
        """Run a lifecycle hook; failures are logged, never propagated."""
        if hook is None:
            return
        try:
            result = hook(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(f"Workflow hook {getattr(hook, '__name__', hook)!r} failed")

    def _spawn_hook(self, hook: Callable[..., Any] | None, *args: Any) -> None:
        if hook is None:
            return
        task = asyncio.create_task(self._call_hook(hook, *args))
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)

    def _retire(self, execution_id: UUID) -> None:
        self._finished.append(execution_id)
        while len(self._finished) > self._config.retain_finished:
            self._handles.pop(self._finished.pop(0), None)


# Strong references for fire-and-forget hook tasks
_background_tasks: set[asyncio.Task[Any]] = set()

