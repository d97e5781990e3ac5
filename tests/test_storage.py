"""
Contract tests run against both JobStore adapters, plus SQLite durability.
"""

from datetime import UTC, datetime, timedelta

import pytest
from uuid_extensions import uuid7

from pytaxis.models import Job, JobExecution, JobState, RunState, Schedule
from pytaxis.storage import SqliteJobStore, StorageError
from pytaxis.workflow import Workflow

T0 = datetime(2024, 6, 1, 9, 0, tzinfo=UTC)


def ping():
    return "pong"


def make_job(name: str, **fields) -> Job:
    fields.setdefault("schedule", Schedule(every=60))
    return Job(name=name, func=ping, **fields)


def make_run(job_name: str, minutes: int, state: RunState = RunState.COMPLETED) -> JobExecution:
    return JobExecution(
        id=uuid7(),
        job_name=job_name,
        queue="default",
        attempt=1,
        state=state,
        started_at=T0 + timedelta(minutes=minutes),
    )


# ==============================================================================
# Jobs
# ==============================================================================


@pytest.mark.asyncio
async def test_put_get_and_replace(store):
    await store.put_job(make_job("sync", tags=("nightly",), next_run_at=T0))

    job = await store.get_job("sync")
    assert job.name == "sync"
    assert job.func is ping
    assert job.tags == ("nightly",)
    assert job.next_run_at == T0
    assert job.schedule.every == timedelta(seconds=60)

    job.priority = 4
    await store.put_job(job)
    assert (await store.get_job("sync")).priority == 4
    assert await store.get_job("missing") is None


@pytest.mark.asyncio
async def test_returned_jobs_are_copies(store):
    await store.put_job(make_job("sync"))

    job = await store.get_job("sync")
    job.run_count = 99

    assert (await store.get_job("sync")).run_count == 0


@pytest.mark.asyncio
async def test_delete_job(store):
    await store.put_job(make_job("temp"))

    assert await store.delete_job("temp")
    assert not await store.delete_job("temp")
    assert await store.get_job("temp") is None


@pytest.mark.asyncio
async def test_list_jobs_filters_and_orders_by_name(store):
    await store.put_job(make_job("charlie", queue="emails"))
    await store.put_job(make_job("alpha", tags=("billing",)))
    await store.put_job(make_job("bravo", enabled=False, state=JobState.DISABLED))
    await store.put_job(make_job("delta", paused=True, state=JobState.PAUSED))

    assert [j.name for j in await store.list_jobs()] == ["alpha", "bravo", "charlie", "delta"]
    assert [j.name for j in await store.list_jobs(queue="emails")] == ["charlie"]
    assert [j.name for j in await store.list_jobs(tag="billing")] == ["alpha"]
    assert [j.name for j in await store.list_jobs(enabled=False)] == ["bravo"]
    assert [j.name for j in await store.list_jobs(state=JobState.PAUSED)] == ["delta"]
    assert [j.name for j in await store.list_jobs(queue="default", enabled=True)] == [
        "alpha",
        "delta",
    ]


@pytest.mark.asyncio
async def test_due_jobs_are_runnable_and_priority_ordered(store):
    now = T0 + timedelta(minutes=10)
    await store.put_job(make_job("late_low", priority=5, next_run_at=T0 + timedelta(minutes=2)))
    await store.put_job(make_job("early_low", priority=5, next_run_at=T0))
    await store.put_job(make_job("urgent", priority=0, next_run_at=T0 + timedelta(minutes=9)))
    await store.put_job(make_job("future", next_run_at=now + timedelta(seconds=1)))
    await store.put_job(make_job("exact", priority=9, next_run_at=now))
    await store.put_job(make_job("unscheduled"))
    await store.put_job(make_job("off", enabled=False, next_run_at=T0))
    await store.put_job(make_job("napping", paused=True, state=JobState.PAUSED, next_run_at=T0))

    due = await store.get_due_jobs(now)

    assert [j.name for j in due] == ["urgent", "early_low", "late_low", "exact"]
    assert [j.name for j in await store.get_due_jobs(now, limit=2)] == ["urgent", "early_low"]


# ==============================================================================
# Run history
# ==============================================================================


@pytest.mark.asyncio
async def test_history_is_newest_first(store):
    for minute in (1, 3, 2):
        await store.record_execution(make_run("sync", minute))
    await store.record_execution(make_run("other", 5))

    rows = await store.get_executions("sync")

    assert [r.started_at.minute for r in rows] == [3, 2, 1]
    assert len(await store.get_executions("sync", limit=2)) == 2


@pytest.mark.asyncio
async def test_record_execution_replaces_by_id(store):
    run = make_run("sync", 0, RunState.RUNNING)
    await store.record_execution(run)

    run.state = RunState.FAILED
    run.error = "RuntimeError: boom"
    run.finished_at = run.started_at + timedelta(seconds=2)
    await store.record_execution(run)

    [row] = await store.get_executions("sync")
    assert row.id == run.id
    assert row.state == RunState.FAILED
    assert row.duration_ms == 2000
    assert [r.id for r in await store.get_executions("sync", state=RunState.FAILED)] == [run.id]
    assert await store.get_executions("sync", state=RunState.COMPLETED) == []


@pytest.mark.asyncio
async def test_prune_keeps_running_rows(store):
    await store.record_execution(make_run("sync", 0, RunState.COMPLETED))
    await store.record_execution(make_run("sync", 1, RunState.RUNNING))
    await store.record_execution(make_run("sync", 2, RunState.FAILED))
    await store.record_execution(make_run("sync", 30, RunState.COMPLETED))

    removed = await store.prune_executions(T0 + timedelta(minutes=10))

    assert removed == 2
    rows = await store.get_executions("sync")
    assert [r.state for r in rows] == [RunState.COMPLETED, RunState.RUNNING]


# ==============================================================================
# Workflow catalog
# ==============================================================================


@pytest.mark.asyncio
async def test_workflow_catalog(store):
    etl = Workflow("etl", tags=("data",)).step("extract", lambda ctx: None)
    await store.register_workflow(etl)
    await store.register_workflow(Workflow("backup"))

    assert await store.list_workflows() == ["backup", "etl"]
    assert await store.get_workflow("etl") is etl
    assert await store.get_workflow("missing") is None

    assert await store.delete_workflow("etl")
    assert not await store.delete_workflow("etl")
    assert await store.list_workflows() == ["backup"]


@pytest.mark.asyncio
async def test_reset_clears_everything(store):
    await store.put_job(make_job("sync"))
    await store.record_execution(make_run("sync", 0))
    await store.register_workflow(Workflow("etl"))

    await store.reset()

    assert await store.list_jobs() == []
    assert await store.get_executions("sync") == []
    assert await store.list_workflows() == []


# ==============================================================================
# SQLite specifics
# ==============================================================================


@pytest.mark.asyncio
async def test_sqlite_jobs_survive_reconnect(temp_db_path):
    first = SqliteJobStore(str(temp_db_path))
    await first.connect()
    await first.put_job(make_job("durable", next_run_at=T0))
    await first.register_workflow(Workflow("etl"))
    await first.close()

    second = SqliteJobStore(str(temp_db_path))
    await second.connect()
    try:
        job = await second.get_job("durable")
        assert job.next_run_at == T0
        assert job.func is ping
        assert await second.list_workflows() == ["etl"]
        # Definitions hold callables; only the catalog row survives
        assert await second.get_workflow("etl") is None
    finally:
        await second.close()


@pytest.mark.asyncio
async def test_sqlite_requires_connect(temp_db_path):
    store = SqliteJobStore(str(temp_db_path))

    with pytest.raises(StorageError, match="Not connected"):
        await store.get_job("x")


@pytest.mark.asyncio
async def test_sqlite_rejects_unpicklable_jobs(sqlite_memory_store):
    job = Job(name="closure", func=lambda: None, schedule=Schedule(every=60))

    with pytest.raises(StorageError, match="Cannot serialize"):
        await sqlite_memory_store.put_job(job)


@pytest.mark.asyncio
async def test_sqlite_in_memory_repr(sqlite_memory_store):
    assert repr(sqlite_memory_store) == "SqliteJobStore(in-memory)"
