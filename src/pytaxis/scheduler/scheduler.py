"""
Scheduler - job registry, trigger evaluation and the leader-gated tick.

Design Principle: Single Responsibility
The Scheduler decides WHEN jobs run; Queue decides HOW MANY run at once and
runs them. Jobs live in a JobStore so a restarted scheduler picks up where
it left off.

Tick (every ``tick_interval`` seconds, leader only):
    1. Ask the store for due jobs (priority order)
    2. Advance each job's next_run_at
    3. Push it to its queue

Design Pattern: Façade
One object fronts job CRUD, queue control, event triggers, peer status and
dead-letter resubmission.

Usage:
    store = SqliteJobStore("scheduler.db")
    await store.connect()

    scheduler = Scheduler(store, SchedulerConfig().with_queue("emails", 5))
    await scheduler.insert(Job("digest", func=send_digest, schedule=Schedule(cron="0 8 * * *")))

    handle = await scheduler.start()
    ...
    await handle.shutdown()
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import os
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from pytaxis import telemetry as telemetry_module
from pytaxis.models import DeadLetterEntry, Job, JobExecution, JobState, RunState, Schedule
from pytaxis.scheduler.errors import (
    InvalidJob,
    JobExists,
    JobNotFound,
    QueueFull,
    QueueNotFound,
    QueuePaused,
    SchedulerError,
)
from pytaxis.scheduler.peers import LocalPeer, PeerElection, PeerInfo
from pytaxis.scheduler.queue import Queue, QueueStats
from pytaxis.scheduler.triggers import CronEvaluator, CroniterEvaluator, next_run_at
from pytaxis.storage.base import JobStore
from pytaxis.telemetry import Telemetry

if TYPE_CHECKING:
    from pytaxis.deadletter import DeadLetterQueue
    from pytaxis.workflow.engine import WorkflowEngine

logger = logging.getLogger(__name__)


# =============================================================================
# Configuration
# =============================================================================


def parse_queues(value: str) -> dict[str, int]:
    """Parse ``"default:10,emails:5"`` into ``{"default": 10, "emails": 5}``."""
    queues: dict[str, int] = {}
    for item in value.split(","):
        item = item.strip()
        if not item:
            continue
        name, sep, limit = item.partition(":")
        if not sep or not name.strip():
            raise ValueError(f"Invalid queue spec {item!r}, expected name:limit")
        queues[name.strip()] = int(limit)
    return queues


@dataclass
class SchedulerConfig:
    """Scheduler settings."""

    tick_interval: float = 1.0
    """Seconds between due-job scans."""

    queues: dict[str, int] = field(default_factory=lambda: {"default": 10})
    """Queue name → concurrency limit."""

    node: str | None = None
    """Node name reported to peers (default: PYTAXIS_NODE or the hostname)."""

    max_pending: int = 1000
    """Jobs that may wait in a single queue before pushes are rejected."""

    due_batch: int = 100
    """Most due jobs fetched per tick."""

    @classmethod
    def from_env(cls) -> SchedulerConfig:
        """Read PYTAXIS_TICK_INTERVAL, PYTAXIS_QUEUES and PYTAXIS_NODE.

        Example:
            # $ export PYTAXIS_QUEUES="default:10,emails:5"
            config = SchedulerConfig.from_env()
        """
        config = cls()
        if value := os.environ.get("PYTAXIS_TICK_INTERVAL"):
            config.tick_interval = float(value)
        if value := os.environ.get("PYTAXIS_QUEUES"):
            config.queues = parse_queues(value)
        if value := os.environ.get("PYTAXIS_NODE"):
            config.node = value
        return config

    def with_tick_interval(self, seconds: float) -> SchedulerConfig:
        if seconds <= 0:
            raise ValueError("tick_interval must be > 0")
        self.tick_interval = seconds
        return self

    def with_queue(self, name: str, concurrency: int) -> SchedulerConfig:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.queues[name] = concurrency
        return self

    def with_node(self, node: str) -> SchedulerConfig:
        self.node = node
        return self

    def with_max_pending(self, max_pending: int) -> SchedulerConfig:
        self.max_pending = max_pending
        return self


@dataclass
class SchedulerStatus:
    node: str | None
    is_leader: bool
    running: bool
    started_at: datetime | None
    jobs: int
    queues: dict[str, QueueStats]


# =============================================================================
# Scheduler
# =============================================================================


class Scheduler:
    """Fires jobs on their triggers and manages the queues that run them."""

    def __init__(
        self,
        store: JobStore,
        config: SchedulerConfig | None = None,
        engine: WorkflowEngine | None = None,
        dead_letter: DeadLetterQueue | None = None,
        peers: PeerElection | None = None,
        cron: CronEvaluator | None = None,
        telemetry: Telemetry | None = None,
    ):
        self._store = store
        self._config = config or SchedulerConfig()
        self._engine = engine
        self._dead_letter = dead_letter
        self._peers = peers or LocalPeer(self._config.node)
        self._cron = cron or CroniterEvaluator()
        self._telemetry = telemetry or telemetry_module.default

        self._queues: dict[str, Queue] = {
            name: Queue(
                name,
                limit,
                store=store,
                engine=engine,
                dead_letter=dead_letter,
                telemetry=self._telemetry,
                max_pending=self._config.max_pending,
                on_finished=self._job_finished,
            )
            for name, limit in self._config.queues.items()
        }

        if dead_letter is not None:
            dead_letter.set_resubmit(self.resubmit)
            if engine is not None and engine.dead_letter is None:
                engine.attach_dead_letter(dead_letter)

        self._tick_task: asyncio.Task | None = None
        self._started_at: datetime | None = None

    def __repr__(self) -> str:
        return f"Scheduler(queues={list(self._queues)}, store={self._store!r})"

    @property
    def config(self) -> SchedulerConfig:
        return self._config

    @property
    def store(self) -> JobStore:
        return self._store

    # =========================================================================
    # Job CRUD
    # =========================================================================

    async def insert(self, job: Job) -> Job:
        """
        Validate and store a new job, computing its first fire time.

        Raises:
            InvalidJob: The job breaks a naming, target or schedule rule
            QueueNotFound: ``job.queue`` is not configured
            JobExists: A job with this name is already stored
        """
        self._validate(job)
        if await self._store.get_job(job.name) is not None:
            raise JobExists(job.name)

        now = datetime.now(UTC)
        job.inserted_at = now
        if job.next_run_at is None:
            job.next_run_at = self._next_run(job, now)
        await self._store.put_job(job)

        logger.info(f"Inserted job {job.name} ({job.schedule.kind}), next run at {job.next_run_at}")
        self._telemetry.emit("scheduler.job.insert", {}, {"job_name": job.name, "queue": job.queue})
        return job

    async def update(self, name: str, **changes: Any) -> Job:
        """
        Replace fields of a stored job.

        A changed schedule recomputes ``next_run_at`` from now.

        Example:
            await scheduler.update("digest", priority=2, schedule=Schedule(cron="0 9 * * *"))
        """
        job = await self.get(name)
        if "name" in changes and changes["name"] != name:
            raise InvalidJob(name, ["a job cannot be renamed"])
        try:
            updated = dataclasses.replace(job, **changes)
        except TypeError as e:
            raise InvalidJob(name, [str(e)]) from e
        self._validate(updated)

        if "schedule" in changes and "next_run_at" not in changes:
            updated.next_run_at = self._next_run(updated, datetime.now(UTC))
        await self._store.put_job(updated)
        logger.debug(f"Updated job {name}: {sorted(changes)}")
        return updated

    async def delete(self, name: str) -> None:
        """Delete a job, cancelling any run in progress."""
        job = await self.get(name)
        queue = self._queues.get(job.queue)
        if queue is not None:
            await queue.cancel(name)
        await self._store.delete_job(name)
        logger.info(f"Deleted job {name}")
        self._telemetry.emit("scheduler.job.delete", {}, {"job_name": name, "queue": job.queue})

    async def get(self, name: str) -> Job:
        job = await self._store.get_job(name)
        if job is None:
            raise JobNotFound(name)
        return job

    async def all(
        self,
        queue: str | None = None,
        state: JobState | None = None,
        tag: str | None = None,
        enabled: bool | None = None,
    ) -> list[Job]:
        return await self._store.list_jobs(queue=queue, state=state, tag=tag, enabled=enabled)

    def _validate(self, job: Job) -> None:
        problems = job.validate()
        for expr in job.schedule.cron_expressions:
            try:
                self._cron.next_fire_time(expr, datetime.now(UTC))
            except ValueError as e:
                problems.append(str(e))
        if job.workflow is not None and self._engine is None:
            problems.append(f"workflow job {job.name!r} needs a WorkflowEngine")
        if problems:
            raise InvalidJob(job.name, problems)
        if job.queue not in self._queues:
            raise QueueNotFound(job.queue)

    def _next_run(self, job: Job, now: datetime) -> datetime | None:
        return next_run_at(job.schedule, now, self._cron, inserted_at=job.inserted_at)

    # =========================================================================
    # Job control
    # =========================================================================

    async def pause_job(self, name: str) -> Job:
        job = await self.get(name)
        job.paused = True
        job.state = JobState.PAUSED
        await self._store.put_job(job)
        logger.info(f"Paused job {name}")
        return job

    async def resume_job(self, name: str) -> Job:
        """Resume a paused job. A recurring job whose fire time passed while
        paused fires at its next regular time instead of catching up."""
        job = await self.get(name)
        job.paused = False
        job.state = JobState.ACTIVE
        now = datetime.now(UTC)
        if not job.schedule.is_one_shot and (job.next_run_at is None or job.next_run_at < now):
            job.next_run_at = self._next_run(job, now)
        await self._store.put_job(job)
        logger.info(f"Resumed job {name}, next run at {job.next_run_at}")
        return job

    async def run_now(self, name: str) -> bool:
        """Push a job to its queue immediately, outside its schedule.

        Returns:
            False if a run of the job is already queued or running
        """
        job = await self.get(name)
        return await self._queue(job.queue).push(job)

    async def cancel_job(self, name: str) -> bool:
        """Cancel a queued or running job. Returns False if it was not queued."""
        job = await self.get(name)
        return await self._queue(job.queue).cancel(name)

    def running_jobs(self) -> list[str]:
        return [name for queue in self._queues.values() for name in queue.running_jobs()]

    async def history(
        self, name: str, limit: int = 50, state: RunState | None = None
    ) -> list[JobExecution]:
        return await self._store.get_executions(name, limit=limit, state=state)

    async def status(self) -> SchedulerStatus:
        jobs = await self._store.list_jobs()
        return SchedulerStatus(
            node=self._config.node or self._peers.leader_node(),
            is_leader=self._peers.is_leader(),
            running=self.is_running(),
            started_at=self._started_at,
            jobs=len(jobs),
            queues=self.queue_stats(),
        )

    # =========================================================================
    # Queues
    # =========================================================================

    def _queue(self, name: str) -> Queue:
        queue = self._queues.get(name)
        if queue is None:
            raise QueueNotFound(name)
        return queue

    async def pause_queue(self, name: str) -> None:
        await self._queue(name).pause()

    async def resume_queue(self, name: str) -> None:
        await self._queue(name).resume()

    async def scale_queue(self, name: str, concurrency: int) -> None:
        await self._queue(name).scale(concurrency)

    def queue_stats(self, name: str | None = None) -> dict[str, QueueStats]:
        if name is not None:
            return {name: self._queue(name).stats()}
        return {queue_name: queue.stats() for queue_name, queue in self._queues.items()}

    # =========================================================================
    # Events and peers
    # =========================================================================

    async def emit_event(self, name: str, payload: dict[str, Any] | None = None) -> list[str]:
        """
        Fire every runnable job triggered by event ``name``.

        A payload is passed to each job as the ``event`` keyword argument.

        Returns:
            Names of the jobs pushed
        """
        fired: list[str] = []
        for job in await self._store.list_jobs(enabled=True):
            if job.schedule.on_event != name or not job.runnable:
                continue
            if payload is not None:
                job = dataclasses.replace(job, kwargs={**job.kwargs, "event": payload})
            try:
                if await self._queue(job.queue).push(job):
                    fired.append(job.name)
            except (QueuePaused, QueueFull, QueueNotFound) as e:
                logger.warning(f"Event {name!r} could not fire {job.name}: {e}")
        logger.debug(f"Event {name!r} fired {fired}")
        self._telemetry.emit("scheduler.event", {"fired": len(fired)}, {"event": name})
        return fired

    def is_leader(self) -> bool:
        return self._peers.is_leader()

    def leader_node(self) -> str | None:
        return self._peers.leader_node()

    def peers(self) -> list[PeerInfo]:
        return self._peers.peers()

    # =========================================================================
    # Dead-letter resubmission
    # =========================================================================

    async def resubmit(self, entry: DeadLetterEntry) -> UUID | str:
        """
        Replay a dead-lettered entry.

        Workflow executions dead-lettered by the engine start a fresh
        execution with the original context; scheduler jobs are pushed to
        their queue again.

        Returns:
            The new execution id, or the job name that was queued
        """
        if "execution_id" in entry.meta:
            if self._engine is None:
                raise SchedulerError(f"Cannot resubmit workflow {entry.workflow!r}: no engine")
            context = dict(entry.kwargs.get("context") or {})
            execution_id = await self._engine.start(entry.workflow or entry.job_name, context)
            logger.info(f"Resubmitted workflow {entry.workflow} as execution {execution_id}")
            return execution_id

        stored = await self._store.get_job(entry.job_name)
        if stored is not None:
            job = dataclasses.replace(stored, args=entry.args, kwargs=dict(entry.kwargs))
        else:
            job = Job(
                name=entry.job_name,
                func=entry.func,
                workflow=entry.workflow,
                args=entry.args,
                kwargs=dict(entry.kwargs),
                queue=entry.queue,
                schedule=Schedule(in_=0),
            )
        if not await self._queue(job.queue).push(job):
            raise SchedulerError(f"Job {job.name!r} is already queued")
        logger.info(f"Resubmitted job {job.name} to queue {job.queue}")
        return job.name

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def is_running(self) -> bool:
        return self._tick_task is not None and not self._tick_task.done()

    async def start(self) -> SchedulerHandle:
        """
        Reload jobs, start the queues and the tick loop.

        Jobs missing a ``next_run_at`` (never computed, or lost on a restart)
        get one computed from now. One-shot jobs that already ran are left
        alone.
        """
        now = datetime.now(UTC)
        reloaded = 0
        for job in await self._store.list_jobs():
            if job.next_run_at is not None or job.schedule.on_event is not None:
                continue
            if job.schedule.is_one_shot and job.run_count > 0:
                continue
            job.next_run_at = self._next_run(job, now)
            await self._store.put_job(job)
            reloaded += 1
        if reloaded:
            logger.info(f"Recomputed next_run_at for {reloaded} job(s)")

        for queue in self._queues.values():
            await queue.start()
        if self._dead_letter is not None:
            await self._dead_letter.start()

        self._started_at = now
        self._tick_task = asyncio.create_task(self._tick_loop(), name="pytaxis-scheduler-tick")
        logger.info(
            f"Scheduler started on {self._peers.leader_node()} "
            f"(queues={self._config.queues}, tick={self._config.tick_interval}s)"
        )
        return SchedulerHandle(self, self._tick_task)

    async def shutdown(self, cancel_running: bool = False) -> None:
        """Stop ticking, then stop every queue (waiting for running jobs by default)."""
        logger.info("Scheduler shutting down...")
        if self._tick_task is not None:
            self._tick_task.cancel()
            try:
                await self._tick_task
            except asyncio.CancelledError:
                pass
        for queue in self._queues.values():
            await queue.stop(cancel_running=cancel_running)
        if self._dead_letter is not None:
            await self._dead_letter.stop()
        logger.info("Scheduler stopped")

    async def _tick_loop(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Scheduler tick failed: {e}")
            await asyncio.sleep(self._config.tick_interval)

    async def tick(self, now: datetime | None = None) -> list[str]:
        """
        Push every due job to its queue. No-op unless this node leads.

        Returns:
            Names of the jobs pushed
        """
        if not self._peers.is_leader():
            return []

        now = now or datetime.now(UTC)
        pushed: list[str] = []
        for job in await self._store.get_due_jobs(now, limit=self._config.due_batch):
            queue = self._queues.get(job.queue)
            if queue is None:
                logger.warning(f"Job {job.name} is due on unknown queue {job.queue!r}")
                continue

            due_at = job.next_run_at
            job.next_run_at = None if job.schedule.is_one_shot else self._next_run(job, now)
            await self._store.put_job(job)
            try:
                if await queue.push(job):
                    pushed.append(job.name)
            except (QueuePaused, QueueFull) as e:
                logger.debug(f"Job {job.name} stays due: {e}")
                job.next_run_at = due_at
                await self._store.put_job(job)

        if pushed:
            logger.debug(f"Tick pushed {pushed}")
        return pushed

    async def _job_finished(self, job: Job, state: RunState) -> None:
        if not job.schedule.is_one_shot or state == RunState.CANCELLED:
            return
        stored = await self._store.get_job(job.name)
        if stored is not None and stored.next_run_at is None:
            stored.enabled = False
            stored.state = JobState.DISABLED
            await self._store.put_job(stored)
            logger.debug(f"One-shot job {job.name} disabled after {state}")


class SchedulerHandle:
    """Handle for controlling a running scheduler.

    Usage:
        handle = await scheduler.start()
        await handle.shutdown()
    """

    def __init__(self, scheduler: Scheduler, task: asyncio.Task):
        self._scheduler = scheduler
        self._task = task

    @property
    def scheduler(self) -> Scheduler:
        return self._scheduler

    def is_running(self) -> bool:
        return not self._task.done()

    async def shutdown(self, cancel_running: bool = False) -> None:
        await self._scheduler.shutdown(cancel_running=cancel_running)

    def abort(self) -> None:
        """Cancel the tick loop without stopping the queues."""
        self._task.cancel()
