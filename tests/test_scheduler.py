"""
Tests for the Scheduler: job registry, tick, events, control surface and
dead-letter resubmission.
"""

import asyncio
from datetime import UTC, datetime, timedelta
from uuid import UUID

import pytest

from pytaxis.models import ExecutionState, Job, JobState, RunState, Schedule
from pytaxis.scheduler import (
    InvalidJob,
    JobExists,
    JobNotFound,
    LocalPeer,
    PeerInfo,
    QueueNotFound,
    Scheduler,
    SchedulerConfig,
    parse_queues,
)
from pytaxis.workflow import Workflow


async def wait_until(predicate, timeout: float = 2.0):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


def noop():
    return None


class Follower:
    """A peer that never leads."""

    def is_leader(self):
        return False

    def leader_node(self):
        return "other-node"

    def peers(self):
        return [PeerInfo("other-node", True), PeerInfo("this-node", False)]


@pytest.fixture
async def scheduler(in_memory_store, engine, dlq, telemetry):
    config = SchedulerConfig(tick_interval=0.05).with_queue("emails", 2).with_node("test-node")
    sched = Scheduler(in_memory_store, config, engine=engine, dead_letter=dlq, telemetry=telemetry)
    yield sched
    await sched.shutdown(cancel_running=True)


# ==============================================================================
# Insert and validation
# ==============================================================================


@pytest.mark.asyncio
async def test_insert_computes_first_fire_time(scheduler, recorder):
    job = await scheduler.insert(Job("heartbeat", func=noop, schedule=Schedule(every=60)))

    assert job.inserted_at is not None
    assert job.next_run_at == job.inserted_at + timedelta(seconds=60)
    assert (await scheduler.get("heartbeat")).next_run_at == job.next_run_at
    assert recorder.names("scheduler.job.") == ["scheduler.job.insert"]


@pytest.mark.asyncio
async def test_insert_one_shot_and_event_jobs(scheduler):
    later = await scheduler.insert(Job("later", func=noop, schedule=Schedule(in_=30)))
    evented = await scheduler.insert(Job("evented", func=noop, schedule=Schedule(on_event="x")))

    assert later.next_run_at == later.inserted_at + timedelta(seconds=30)
    assert evented.next_run_at is None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "job",
    [
        Job("Bad-Name", func=noop, schedule=Schedule(every=60)),
        Job("no_target", schedule=Schedule(every=60)),
        Job("two_targets", func=noop, workflow="wf", schedule=Schedule(every=60)),
        Job("no_schedule", func=noop),
        Job("bad_priority", func=noop, priority=10, schedule=Schedule(every=60)),
        Job("bad_cron", func=noop, schedule=Schedule(cron="not a cron")),
    ],
    ids=lambda job: job.name,
)
async def test_invalid_jobs_are_rejected(scheduler, job):
    with pytest.raises(InvalidJob) as exc_info:
        await scheduler.insert(job)
    assert exc_info.value.problems


@pytest.mark.asyncio
async def test_workflow_job_needs_an_engine(in_memory_store, telemetry):
    sched = Scheduler(in_memory_store, telemetry=telemetry)

    with pytest.raises(InvalidJob, match="needs a WorkflowEngine"):
        await sched.insert(Job("wf_job", workflow="etl", schedule=Schedule(every=60)))


@pytest.mark.asyncio
async def test_unknown_queue_and_duplicates(scheduler):
    with pytest.raises(QueueNotFound):
        await scheduler.insert(Job("lost", func=noop, queue="nowhere", schedule=Schedule(every=60)))

    await scheduler.insert(Job("dup", func=noop, schedule=Schedule(every=60)))
    with pytest.raises(JobExists):
        await scheduler.insert(Job("dup", func=noop, schedule=Schedule(every=60)))


# ==============================================================================
# Update, delete, queries
# ==============================================================================


@pytest.mark.asyncio
async def test_update_fields_and_schedule(scheduler):
    await scheduler.insert(Job("report", func=noop, schedule=Schedule(every=60)))

    updated = await scheduler.update("report", priority=3, schedule=Schedule(every=3600))

    assert updated.priority == 3
    assert updated.next_run_at > datetime.now(UTC) + timedelta(minutes=59)
    assert (await scheduler.get("report")).priority == 3


@pytest.mark.asyncio
async def test_update_rejects_rename_and_unknown_fields(scheduler):
    await scheduler.insert(Job("fixed", func=noop, schedule=Schedule(every=60)))

    with pytest.raises(InvalidJob):
        await scheduler.update("fixed", name="renamed")
    with pytest.raises(InvalidJob):
        await scheduler.update("fixed", colour="blue")
    with pytest.raises(InvalidJob):
        await scheduler.update("fixed", priority=42)
    with pytest.raises(JobNotFound):
        await scheduler.update("missing", priority=1)


@pytest.mark.asyncio
async def test_delete(scheduler, recorder):
    await scheduler.insert(Job("temp", func=noop, schedule=Schedule(every=60)))

    await scheduler.delete("temp")

    assert "scheduler.job.delete" in recorder.names()
    with pytest.raises(JobNotFound):
        await scheduler.get("temp")
    with pytest.raises(JobNotFound):
        await scheduler.delete("temp")


@pytest.mark.asyncio
async def test_all_filters(scheduler):
    await scheduler.insert(Job("a", func=noop, tags=("daily",), schedule=Schedule(every=60)))
    await scheduler.insert(Job("b", func=noop, queue="emails", schedule=Schedule(every=60)))

    assert [j.name for j in await scheduler.all()] == ["a", "b"]
    assert [j.name for j in await scheduler.all(queue="emails")] == ["b"]
    assert [j.name for j in await scheduler.all(tag="daily")] == ["a"]
    assert [j.name for j in await scheduler.all(state=JobState.PAUSED)] == []


# ==============================================================================
# Tick
# ==============================================================================


@pytest.mark.asyncio
async def test_tick_pushes_due_jobs_and_advances(scheduler):
    past = datetime.now(UTC) - timedelta(seconds=5)
    await scheduler.insert(Job("due", func=noop, schedule=Schedule(every=60), next_run_at=past))
    await scheduler.insert(Job("not_due", func=noop, schedule=Schedule(every=60)))

    now = datetime.now(UTC)
    pushed = await scheduler.tick(now)

    assert pushed == ["due"]
    assert (await scheduler.get("due")).next_run_at == now + timedelta(seconds=60)
    assert scheduler.queue_stats("default")["default"].pending == 1
    assert await scheduler.tick(now) == []


@pytest.mark.asyncio
async def test_tick_orders_by_priority(scheduler):
    past = datetime.now(UTC) - timedelta(seconds=5)
    for name, priority in (("low", 9), ("high", 0), ("mid", 5)):
        await scheduler.insert(
            Job(name, func=noop, priority=priority, schedule=Schedule(every=60), next_run_at=past)
        )

    assert await scheduler.tick() == ["high", "mid", "low"]


@pytest.mark.asyncio
async def test_one_shot_clears_fire_time_on_tick(scheduler):
    await scheduler.insert(Job("once", func=noop, schedule=Schedule(in_=0)))

    assert await scheduler.tick(datetime.now(UTC) + timedelta(seconds=1)) == ["once"]
    assert (await scheduler.get("once")).next_run_at is None


@pytest.mark.asyncio
async def test_paused_queue_keeps_job_due(scheduler):
    past = datetime.now(UTC) - timedelta(seconds=5)
    await scheduler.insert(Job("held", func=noop, schedule=Schedule(every=60), next_run_at=past))
    await scheduler.pause_queue("default")

    assert await scheduler.tick() == []
    assert (await scheduler.get("held")).next_run_at == past

    await scheduler.resume_queue("default")
    assert await scheduler.tick() == ["held"]


@pytest.mark.asyncio
async def test_only_the_leader_ticks(in_memory_store, telemetry):
    sched = Scheduler(in_memory_store, peers=Follower(), telemetry=telemetry)
    past = datetime.now(UTC) - timedelta(seconds=5)
    await sched.insert(Job("due", func=noop, schedule=Schedule(every=60), next_run_at=past))

    assert await sched.tick() == []
    assert not sched.is_leader()
    assert sched.leader_node() == "other-node"
    assert len(sched.peers()) == 2
    assert (await sched.get("due")).next_run_at == past


@pytest.mark.asyncio
async def test_paused_job_is_not_due(scheduler):
    past = datetime.now(UTC) - timedelta(seconds=5)
    await scheduler.insert(Job("nap", func=noop, schedule=Schedule(every=60), next_run_at=past))

    paused = await scheduler.pause_job("nap")
    assert paused.state == JobState.PAUSED
    assert await scheduler.tick() == []

    resumed = await scheduler.resume_job("nap")
    assert resumed.state == JobState.ACTIVE
    # The missed fire time is not caught up
    assert resumed.next_run_at > datetime.now(UTC)


# ==============================================================================
# Running through the scheduler
# ==============================================================================


@pytest.mark.asyncio
async def test_started_scheduler_runs_due_jobs(scheduler):
    ran = []

    async def work():
        ran.append(datetime.now(UTC))

    past = datetime.now(UTC) - timedelta(seconds=1)
    await scheduler.insert(Job("work", func=work, schedule=Schedule(every=3600), next_run_at=past))

    handle = await scheduler.start()
    assert handle.is_running()
    await wait_until(lambda: len(ran) == 1)

    await wait_until(lambda: not scheduler.running_jobs())
    rows = await scheduler.history("work")
    assert rows[0].job_name == "work"
    assert (await scheduler.get("work")).run_count == 1

    await handle.shutdown()
    assert not handle.is_running()


@pytest.mark.asyncio
async def test_one_shot_job_is_disabled_after_running(scheduler, in_memory_store):
    ran = []
    await scheduler.insert(Job("one_time", func=lambda: ran.append(1), schedule=Schedule(in_=0)))
    await scheduler.start()

    async def disabled():
        job = await in_memory_store.get_job("one_time")
        return not job.enabled

    async def poll():
        while not await disabled():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), 2)
    job = await scheduler.get("one_time")
    assert job.state == JobState.DISABLED
    assert job.run_count == 1
    assert ran == [1]


@pytest.mark.asyncio
async def test_run_now_and_history(scheduler):
    await scheduler.insert(Job("manual", func=noop, schedule=Schedule(on_event="never")))
    await scheduler.start()

    assert await scheduler.run_now("manual")

    async def poll():
        while not await scheduler.history("manual", state=RunState.COMPLETED):
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), 2)
    [row] = await scheduler.history("manual")
    assert row.state == RunState.COMPLETED


@pytest.mark.asyncio
async def test_start_recomputes_missing_fire_times(scheduler, in_memory_store):
    await in_memory_store.put_job(Job("restored", func=noop, schedule=Schedule(every=600)))

    await scheduler.start()

    job = await scheduler.get("restored")
    assert job.next_run_at is not None
    assert job.next_run_at > datetime.now(UTC)


@pytest.mark.asyncio
async def test_emit_event_fires_matching_jobs(scheduler):
    received = []

    async def on_order(event=None):
        received.append(event)

    await scheduler.insert(Job("on_order", func=on_order, schedule=Schedule(on_event="orders.created")))
    await scheduler.insert(Job("on_refund", func=on_order, schedule=Schedule(on_event="orders.refunded")))
    await scheduler.start()

    fired = await scheduler.emit_event("orders.created", {"id": 7})
    await wait_until(lambda: len(received) == 1)

    assert fired == ["on_order"]
    assert received == [{"id": 7}]
    assert await scheduler.emit_event("unknown.event") == []


@pytest.mark.asyncio
async def test_paused_event_job_does_not_fire(scheduler):
    await scheduler.insert(Job("listener", func=noop, schedule=Schedule(on_event="ping")))
    await scheduler.pause_job("listener")

    assert await scheduler.emit_event("ping") == []


@pytest.mark.asyncio
async def test_cancel_job(scheduler):
    started = asyncio.Event()

    async def forever():
        started.set()
        await asyncio.Event().wait()

    await scheduler.insert(Job("hang", func=forever, schedule=Schedule(on_event="go"), timeout=None))
    await scheduler.start()
    await scheduler.run_now("hang")
    await asyncio.wait_for(started.wait(), 2)

    assert scheduler.running_jobs() == ["hang"]
    assert await scheduler.cancel_job("hang")
    assert scheduler.running_jobs() == []


# ==============================================================================
# Queues and status
# ==============================================================================


@pytest.mark.asyncio
async def test_queue_control(scheduler):
    await scheduler.scale_queue("emails", 4)
    await scheduler.pause_queue("emails")

    stats = scheduler.queue_stats()
    assert set(stats) == {"default", "emails"}
    assert stats["emails"].concurrency == 4
    assert stats["emails"].paused

    with pytest.raises(QueueNotFound):
        await scheduler.pause_queue("nowhere")


@pytest.mark.asyncio
async def test_status(scheduler):
    await scheduler.insert(Job("one", func=noop, schedule=Schedule(every=60)))

    status = await scheduler.status()

    assert status.node == "test-node"
    assert status.is_leader
    assert not status.running
    assert status.jobs == 1
    assert set(status.queues) == {"default", "emails"}


# ==============================================================================
# Dead-letter resubmission
# ==============================================================================


@pytest.mark.asyncio
async def test_dead_lettered_job_is_resubmitted_once(scheduler, dlq):
    attempts = []
    healthy = False

    async def fragile(n):
        attempts.append(n)
        if not healthy:
            raise ConnectionError("down")

    await scheduler.insert(
        Job("fragile", func=fragile, args=(1,), max_retries=0, schedule=Schedule(on_event="go"))
    )
    await scheduler.start()
    await scheduler.run_now("fragile")
    await wait_until(lambda: len(dlq) == 1)
    await wait_until(lambda: not scheduler.running_jobs())

    [entry] = await dlq.list()
    healthy = True
    assert await dlq.retry(entry.id) == "fragile"

    await wait_until(lambda: len(attempts) == 2)
    assert attempts == [1, 1]
    assert await dlq.count() == 0


@pytest.mark.asyncio
async def test_dead_lettered_workflow_restarts(scheduler, engine, dlq):
    healthy = False

    def step(ctx):
        if not healthy:
            raise RuntimeError("not yet")
        return {"ok": ctx["day"]}

    wf = Workflow("ingest", dead_letter=True).step("load", step, max_retries=0)
    await engine.register(wf)

    info = await engine.run("ingest", {"day": "tue"}, timeout=5)
    assert info.state == ExecutionState.FAILED
    [entry] = await dlq.list()

    healthy = True
    execution_id = await dlq.retry(entry.id)

    assert isinstance(execution_id, UUID)
    retried = await engine.wait(execution_id, timeout=5)
    assert retried.state == ExecutionState.COMPLETED
    assert retried.context["load"] == {"ok": "tue"}
    assert len(dlq) == 0


# ==============================================================================
# Configuration and peers
# ==============================================================================


def test_parse_queues():
    assert parse_queues("default:10, emails:5") == {"default": 10, "emails": 5}
    assert parse_queues("") == {}
    with pytest.raises(ValueError):
        parse_queues("default")
    with pytest.raises(ValueError):
        parse_queues("default:many")


def test_config_from_env(monkeypatch):
    monkeypatch.setenv("PYTAXIS_TICK_INTERVAL", "0.5")
    monkeypatch.setenv("PYTAXIS_QUEUES", "default:3,reports:1")
    monkeypatch.setenv("PYTAXIS_NODE", "worker-1")

    config = SchedulerConfig.from_env()

    assert config.tick_interval == 0.5
    assert config.queues == {"default": 3, "reports": 1}
    assert config.node == "worker-1"


def test_config_builders_validate():
    with pytest.raises(ValueError):
        SchedulerConfig().with_tick_interval(0)
    with pytest.raises(ValueError):
        SchedulerConfig().with_queue("x", 0)
    assert SchedulerConfig().with_max_pending(5).max_pending == 5


def test_local_peer_always_leads(monkeypatch):
    monkeypatch.setenv("PYTAXIS_NODE", "node-a")
    peer = LocalPeer()

    assert peer.node == "node-a"
    assert peer.is_leader()
    assert peer.leader_node() == "node-a"
    assert [p.node for p in peer.peers()] == ["node-a"]
    assert LocalPeer("explicit").node == "explicit"
