"""
Per-queue job producer with bounded concurrency.

Each configured queue runs one Queue. The scheduler pushes due jobs into
it; a dispatch loop starts them as slots free up.

    push() ──▶ pending (priority heap) ──▶ dispatch loop ──▶ running tasks
                                              ▲                   │
                                              └── Condition ◀─────┘

Design Patterns:
- Producer/Consumer: push() produces, the dispatch loop consumes
- Template Method: _run() fixes the run sequence (history row, invoke,
  retry or finalize)

A failed run is retried with the job's RetryPolicy backoff. When the retry
budget is spent the job is marked failed in the store and, if a
DeadLetterQueue is attached, dead-lettered.

Pausing stops dispatch but keeps pending work; resume() picks it up again.
"""

from __future__ import annotations

import asyncio
import heapq
import inspect
import itertools
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from uuid_extensions import uuid7

from pytaxis import telemetry as telemetry_module
from pytaxis.models import ExecutionState, Job, JobExecution, RunState
from pytaxis.scheduler.errors import QueueFull, QueuePaused, SchedulerError
from pytaxis.storage.base import JobStore, StorageError
from pytaxis.telemetry import Telemetry
from pytaxis.workflow.step import is_async_callable

if TYPE_CHECKING:
    from pytaxis.deadletter import DeadLetterQueue
    from pytaxis.workflow.engine import WorkflowEngine

logger = logging.getLogger(__name__)


class WorkflowJobFailed(SchedulerError):
    """A job's workflow execution ended in a non-completed state."""

    def __init__(self, job_name: str, execution_id: Any, state: ExecutionState, error: str | None):
        self.job_name = job_name
        self.execution_id = execution_id
        self.state = state
        self.error = error
        super().__init__(f"Workflow for job {job_name!r} ended {state}: {error}")


@dataclass
class QueueStats:
    queue: str
    concurrency: int
    running: int
    pending: int
    retrying: int
    paused: bool
    available: int
    running_jobs: list[str] = field(default_factory=list)
    completed: int = 0
    failed: int = 0
    retried: int = 0
    cancelled: int = 0


@dataclass
class _Run:
    """One job moving through the queue, across retries."""

    job: Job
    attempt: int = 1
    first_failed_at: datetime | None = None


class Queue:
    """
    Bounded-concurrency executor for one named queue.

    Usage:
        queue = Queue("emails", concurrency=5, store=store)
        await queue.start()
        await queue.push(job)
        ...
        await queue.stop()
    """

    def __init__(
        self,
        name: str,
        concurrency: int = 10,
        *,
        store: JobStore | None = None,
        engine: WorkflowEngine | None = None,
        dead_letter: DeadLetterQueue | None = None,
        telemetry: Telemetry | None = None,
        max_pending: int = 1000,
        on_finished: Callable[[Job, RunState], Any] | None = None,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.name = name
        self._concurrency = concurrency
        self._store = store
        self._engine = engine
        self._dead_letter = dead_letter
        self._telemetry = telemetry or telemetry_module.default
        self._max_pending = max_pending
        self._on_finished = on_finished

        self._cond = asyncio.Condition()
        self._pending: list[tuple[int, int, _Run]] = []
        self._seq = itertools.count()
        self._running: dict[str, asyncio.Task] = {}
        self._retry_timers: dict[str, asyncio.Task] = {}
        self._paused = False
        self._dispatch_task: asyncio.Task | None = None

        self._completed = 0
        self._failed = 0
        self._retried = 0
        self._cancelled = 0

    def __repr__(self) -> str:
        return (
            f"Queue({self.name!r}, concurrency={self._concurrency}, "
            f"running={len(self._running)}, pending={len(self._pending)})"
        )

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def paused(self) -> bool:
        return self._paused

    def attach(
        self,
        engine: WorkflowEngine | None = None,
        dead_letter: DeadLetterQueue | None = None,
    ) -> None:
        if engine is not None:
            self._engine = engine
        if dead_letter is not None:
            self._dead_letter = dead_letter

    # =========================================================================
    # Control
    # =========================================================================

    async def push(self, job: Job) -> bool:
        """
        Enqueue ``job`` for execution.

        Returns:
            False if a run of the same job is already pending or running
            (the push is dropped), True otherwise.

        Raises:
            QueuePaused: The queue is paused
            QueueFull: ``max_pending`` jobs are already waiting
        """
        async with self._cond:
            if self._paused:
                self._telemetry.emit(
                    "scheduler.job.skip", {}, {"job_name": job.name, "queue": self.name, "reason": "paused"}
                )
                raise QueuePaused(self.name)
            if self._is_queued(job.name):
                logger.debug(f"Queue {self.name}: {job.name} already queued, dropping push")
                return False
            if len(self._pending) >= self._max_pending:
                raise QueueFull(self.name, self._max_pending)
            self._enqueue(_Run(job))
            self._cond.notify_all()
        return True

    def _is_queued(self, job_name: str) -> bool:
        if job_name in self._running or job_name in self._retry_timers:
            return True
        return any(run.job.name == job_name for _, _, run in self._pending)

    def _enqueue(self, run: _Run) -> None:
        heapq.heappush(self._pending, (run.job.priority, next(self._seq), run))

    async def pause(self) -> None:
        async with self._cond:
            self._paused = True
        logger.info(f"Queue {self.name} paused ({len(self._pending)} pending kept)")
        self._telemetry.emit("scheduler.queue.pause", {}, {"queue": self.name})

    async def resume(self) -> None:
        async with self._cond:
            self._paused = False
            self._cond.notify_all()
        logger.info(f"Queue {self.name} resumed")
        self._telemetry.emit("scheduler.queue.resume", {}, {"queue": self.name})

    async def scale(self, concurrency: int) -> None:
        """Change the concurrency limit. Running jobs are never interrupted."""
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        async with self._cond:
            old, self._concurrency = self._concurrency, concurrency
            self._cond.notify_all()
        logger.info(f"Queue {self.name} scaled from {old} to {concurrency}")
        self._telemetry.emit(
            "scheduler.queue.scale",
            {"old_concurrency": old, "new_concurrency": concurrency},
            {"queue": self.name},
        )

    async def cancel(self, job_name: str) -> bool:
        """
        Cancel a running, pending or retry-waiting run of ``job_name``.

        Returns:
            False if the job was not queued here
        """
        async with self._cond:
            task = self._running.get(job_name)
            timer = self._retry_timers.pop(job_name, None)
            before = len(self._pending)
            self._pending = [entry for entry in self._pending if entry[2].job.name != job_name]
            heapq.heapify(self._pending)
            dropped = before - len(self._pending)

        if timer is not None:
            timer.cancel()
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        found = task is not None or timer is not None or dropped > 0
        if found:
            logger.info(f"Queue {self.name}: cancelled {job_name}")
            self._telemetry.emit("scheduler.job.cancel", {}, {"job_name": job_name, "queue": self.name})
        return found

    def running_jobs(self) -> list[str]:
        return list(self._running)

    def stats(self) -> QueueStats:
        return QueueStats(
            queue=self.name,
            concurrency=self._concurrency,
            running=len(self._running),
            pending=len(self._pending),
            retrying=len(self._retry_timers),
            paused=self._paused,
            available=max(0, self._concurrency - len(self._running)),
            running_jobs=list(self._running),
            completed=self._completed,
            failed=self._failed,
            retried=self._retried,
            cancelled=self._cancelled,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        if self._dispatch_task is not None and not self._dispatch_task.done():
            return
        self._dispatch_task = asyncio.create_task(
            self._dispatch_loop(), name=f"pytaxis-queue-{self.name}"
        )
        logger.debug(f"Queue {self.name} started (concurrency={self._concurrency})")

    async def stop(self, cancel_running: bool = False) -> None:
        """
        Stop dispatching.

        Args:
            cancel_running: Cancel in-flight jobs instead of waiting for them
        """
        if self._dispatch_task is not None:
            self._dispatch_task.cancel()
            try:
                await self._dispatch_task
            except asyncio.CancelledError:
                pass
            self._dispatch_task = None

        for timer in list(self._retry_timers.values()):
            timer.cancel()
        self._retry_timers.clear()

        running = list(self._running.values())
        if cancel_running:
            for task in running:
                task.cancel()
        if running:
            logger.info(f"Queue {self.name}: waiting for {len(running)} running jobs")
            await asyncio.gather(*running, return_exceptions=True)
        logger.debug(f"Queue {self.name} stopped")

    async def _dispatch_loop(self) -> None:
        while True:
            async with self._cond:
                await self._cond.wait_for(self._can_dispatch)
                _, _, run = heapq.heappop(self._pending)
                task = asyncio.create_task(self._run(run), name=f"pytaxis-job-{run.job.name}")
                self._running[run.job.name] = task

    def _can_dispatch(self) -> bool:
        return not self._paused and bool(self._pending) and len(self._running) < self._concurrency

    # =========================================================================
    # Running a job
    # =========================================================================

    async def _run(self, run: _Run) -> None:
        job = run.job
        record = JobExecution(
            id=uuid7(),
            job_name=job.name,
            queue=self.name,
            attempt=run.attempt,
            state=RunState.RUNNING,
            started_at=datetime.now(UTC),
        )
        await self._record(record)
        logger.debug(f"Queue {self.name}: running {job.name} (attempt {run.attempt})")

        try:
            with self._telemetry.span(
                "scheduler.job", {"job_name": job.name, "queue": self.name, "attempt": run.attempt}
            ):
                result = await asyncio.wait_for(self._invoke(job), job.timeout)
        except asyncio.CancelledError:
            record.state = RunState.CANCELLED
            record.finished_at = datetime.now(UTC)
            record.error = "cancelled"
            self._cancelled += 1
            await self._record(record)
            await self._finished(job, RunState.CANCELLED)
            raise
        except Exception as e:
            record.state = RunState.FAILED
            record.finished_at = datetime.now(UTC)
            record.error = f"{type(e).__name__}: {e}"
            await self._record(record)
            await self._handle_failure(run, e)
        else:
            record.state = RunState.COMPLETED
            record.finished_at = datetime.now(UTC)
            record.result = result
            self._completed += 1
            await self._record(record)
            await self._mark_completed(job, result)
            await self._finished(job, RunState.COMPLETED)
        finally:
            async with self._cond:
                if self._running.get(job.name) is asyncio.current_task():
                    del self._running[job.name]
                self._cond.notify_all()

    async def _invoke(self, job: Job) -> Any:
        if job.workflow is not None:
            return await self._invoke_workflow(job)

        assert job.func is not None
        if is_async_callable(job.func):
            return await job.func(*job.args, **job.kwargs)
        result = await asyncio.to_thread(job.func, *job.args, **job.kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _invoke_workflow(self, job: Job) -> Any:
        if self._engine is None:
            raise SchedulerError(f"Job {job.name!r} runs workflow {job.workflow!r} but no engine is attached")
        execution_id = await self._engine.start(job.workflow, dict(job.kwargs))
        try:
            info = await self._engine.wait(execution_id)
        except asyncio.CancelledError:
            state = self._engine.get_state(execution_id).state
            if not state.is_terminal:
                await self._engine.cancel(execution_id, reason="job_cancelled")
            raise
        if info.state != ExecutionState.COMPLETED:
            raise WorkflowJobFailed(job.name, execution_id, info.state, info.error)
        return info.context

    async def _handle_failure(self, run: _Run, error: Exception) -> None:
        job = run.job
        policy = job.retry_policy
        run.first_failed_at = run.first_failed_at or datetime.now(UTC)

        delay = policy.delay_for_attempt(run.attempt) if policy.should_retry(error) else None
        if delay is not None:
            self._retried += 1
            logger.warning(
                f"Job {job.name} failed on attempt {run.attempt}, retrying in {delay:.2f}s: {error}"
            )
            self._schedule_retry(_Run(job, run.attempt + 1, run.first_failed_at), delay)
            return

        self._failed += 1
        logger.error(f"Job {job.name} failed after {run.attempt} attempt(s): {error}")
        await self._mark_failed(job, error)
        if self._dead_letter is not None:
            await self._dead_letter.insert_failure(
                job.name,
                error,
                queue=self.name,
                func=job.func,
                workflow=job.workflow,
                args=job.args,
                kwargs=job.kwargs,
                attempts=run.attempt,
                first_failed_at=run.first_failed_at,
                meta={"priority": job.priority, "tags": list(job.tags)},
            )
        await self._finished(job, RunState.FAILED)

    def _schedule_retry(self, run: _Run, delay: float) -> None:
        async def wait_then_enqueue() -> None:
            await asyncio.sleep(delay)
            async with self._cond:
                self._retry_timers.pop(run.job.name, None)
                self._enqueue(run)
                self._cond.notify_all()

        self._retry_timers[run.job.name] = asyncio.create_task(wait_then_enqueue())

    # =========================================================================
    # Store bookkeeping
    # =========================================================================

    async def _record(self, record: JobExecution) -> None:
        if self._store is None:
            return
        try:
            await self._store.record_execution(record)
        except StorageError as e:
            logger.error(f"Queue {self.name}: could not record run of {record.job_name}: {e}")

    async def _mark_completed(self, job: Job, result: Any) -> None:
        def apply(stored: Job) -> None:
            stored.run_count += 1
            stored.last_run_at = datetime.now(UTC)
            stored.last_result = result
            stored.last_error = None

        await self._update_job(job.name, apply)

    async def _mark_failed(self, job: Job, error: Exception) -> None:
        def apply(stored: Job) -> None:
            stored.run_count += 1
            stored.error_count += 1
            stored.last_run_at = datetime.now(UTC)
            stored.last_error = f"{type(error).__name__}: {error}"

        await self._update_job(job.name, apply)

    async def _update_job(self, name: str, apply: Callable[[Job], None]) -> None:
        if self._store is None:
            return
        try:
            stored = await self._store.get_job(name)
            if stored is None:
                return
            apply(stored)
            await self._store.put_job(stored)
        except StorageError as e:
            logger.error(f"Queue {self.name}: could not update job {name}: {e}")

    async def _finished(self, job: Job, state: RunState) -> None:
        if self._on_finished is None:
            return
        try:
            result = self._on_finished(job, state)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(f"Queue {self.name}: on_finished callback failed for {job.name}")
