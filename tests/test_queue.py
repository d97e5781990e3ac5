"""
Tests for the per-queue job runner.

Covers push rules (pause, capacity, dedupe), retries with dead-lettering,
cancellation, scaling and the history rows each run leaves behind.
"""

import asyncio

import pytest

from pytaxis.models import Job, RetryableError, RunState, Schedule
from pytaxis.scheduler import Queue, QueueFull, QueuePaused, WorkflowJobFailed
from pytaxis.workflow import Workflow


async def wait_until(predicate, timeout: float = 2.0):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


def make_job(name: str, func, **fields) -> Job:
    fields.setdefault("schedule", Schedule(every=60))
    return Job(name=name, func=func, **fields)


@pytest.fixture
async def queue(in_memory_store, dlq, telemetry):
    q = Queue("default", 2, store=in_memory_store, dead_letter=dlq, telemetry=telemetry)
    yield q
    await q.stop(cancel_running=True)


# ==============================================================================
# Running jobs
# ==============================================================================


@pytest.mark.asyncio
async def test_job_runs_and_updates_store(queue, in_memory_store):
    async def add(a, b):
        return a + b

    job = make_job("adder", add, args=(2, 3))
    await in_memory_store.put_job(job)
    await queue.start()

    assert await queue.push(job)
    await wait_until(lambda: queue.stats().completed == 1)

    stored = await in_memory_store.get_job("adder")
    assert stored.run_count == 1
    assert stored.last_result == 5
    assert stored.last_error is None
    assert stored.last_run_at is not None

    [row] = await in_memory_store.get_executions("adder")
    assert row.state == RunState.COMPLETED
    assert row.attempt == 1
    assert row.result == 5
    assert row.duration_ms is not None


@pytest.mark.asyncio
async def test_sync_jobs_run_in_a_thread(queue):
    seen = []

    def record(value, *, label):
        seen.append((value, label))

    await queue.start()
    await queue.push(make_job("recorder", record, args=(1,), kwargs={"label": "x"}))
    await wait_until(lambda: queue.stats().completed == 1)

    assert seen == [(1, "x")]


@pytest.mark.asyncio
async def test_run_emits_span_events(queue, recorder):
    async def ok():
        return None

    await queue.start()
    await queue.push(make_job("observed", ok))
    await wait_until(lambda: queue.stats().completed == 1)

    assert recorder.names("scheduler.job.") == ["scheduler.job.start", "scheduler.job.stop"]


# ==============================================================================
# Push rules
# ==============================================================================


@pytest.mark.asyncio
async def test_duplicate_push_is_dropped(queue):
    job = make_job("once", lambda: None)

    assert await queue.push(job)
    assert not await queue.push(job)
    assert queue.stats().pending == 1


@pytest.mark.asyncio
async def test_full_queue_rejects_push(in_memory_store, telemetry):
    q = Queue("tiny", 1, store=in_memory_store, telemetry=telemetry, max_pending=1)

    await q.push(make_job("first", lambda: None))
    with pytest.raises(QueueFull) as exc_info:
        await q.push(make_job("second", lambda: None))
    assert exc_info.value.limit == 1


@pytest.mark.asyncio
async def test_paused_queue_rejects_push_but_keeps_pending(queue, recorder):
    ran = []

    async def work():
        ran.append(1)

    await queue.push(make_job("kept", work))
    await queue.pause()
    await queue.start()

    with pytest.raises(QueuePaused):
        await queue.push(make_job("rejected", work))
    assert "scheduler.job.skip" in recorder.names()

    await asyncio.sleep(0.05)
    assert ran == []
    assert queue.stats().pending == 1
    assert queue.stats().paused

    await queue.resume()
    await wait_until(lambda: queue.stats().completed == 1)
    assert ran == [1]


@pytest.mark.asyncio
async def test_priority_orders_pending_jobs(in_memory_store, telemetry):
    q = Queue("ordered", 1, store=in_memory_store, telemetry=telemetry)
    order = []

    def work(name):
        order.append(name)

    await q.push(make_job("low", work, args=("low",), priority=9))
    await q.push(make_job("high", work, args=("high",), priority=0))
    await q.push(make_job("mid", work, args=("mid",), priority=5))
    await q.start()
    await wait_until(lambda: q.stats().completed == 3)
    await q.stop()

    assert order == ["high", "mid", "low"]


# ==============================================================================
# Failures, retries and dead letters
# ==============================================================================


@pytest.mark.asyncio
async def test_failing_job_retries_then_dead_letters(queue, in_memory_store, dlq):
    calls = []

    async def boom():
        calls.append(1)
        raise ConnectionError("boom")

    job = make_job("flaky", boom, max_retries=2, retry_delay=0, tags=("critical",))
    await in_memory_store.put_job(job)
    await queue.start()
    await queue.push(job)

    await wait_until(lambda: len(dlq) == 1)
    await wait_until(lambda: not queue.running_jobs())

    assert len(calls) == 3
    stats = queue.stats()
    assert stats.failed == 1
    assert stats.retried == 2

    [entry] = await dlq.list()
    assert entry.job_name == "flaky"
    assert entry.func is boom
    assert entry.attempts == 3
    assert entry.error["type"] == "ConnectionError"
    assert entry.error_class == "retryable"
    assert entry.meta == {"priority": 0, "tags": ["critical"]}

    stored = await in_memory_store.get_job("flaky")
    assert stored.error_count == 1
    assert stored.last_error == "ConnectionError: boom"

    rows = await in_memory_store.get_executions("flaky")
    assert sorted(row.attempt for row in rows) == [1, 2, 3]
    assert all(row.state == RunState.FAILED for row in rows)


@pytest.mark.asyncio
async def test_job_timeout_is_a_failure(queue, dlq):
    async def slow():
        await asyncio.sleep(5)

    await queue.start()
    await queue.push(make_job("slow", slow, timeout=0.05, max_retries=0))
    await wait_until(lambda: len(dlq) == 1)

    [entry] = await dlq.list()
    assert entry.error["type"] == "TimeoutError"
    assert entry.error_class == "retryable"


@pytest.mark.asyncio
async def test_non_retryable_error_skips_retries(queue, dlq):
    calls = []

    class Declined(RetryableError):
        def is_retryable(self):
            return False

    def charge():
        calls.append(1)
        raise Declined("card declined")

    job = make_job("charge", charge, max_retries=5, retry_delay=0)
    await queue.start()
    await queue.push(job)
    await wait_until(lambda: len(dlq) == 1)

    [entry] = await dlq.list()
    assert entry.error_class == "terminal"
    assert entry.attempts == 1
    assert len(calls) == 1


# ==============================================================================
# Cancel, scale, stop
# ==============================================================================


@pytest.mark.asyncio
async def test_cancel_running_job(queue, in_memory_store):
    started = asyncio.Event()

    async def forever():
        started.set()
        await asyncio.Event().wait()

    await queue.start()
    await queue.push(make_job("stuck", forever))
    await asyncio.wait_for(started.wait(), 2)

    assert await queue.cancel("stuck")
    assert queue.running_jobs() == []
    assert queue.stats().cancelled == 1
    assert not await queue.cancel("stuck")

    [row] = await in_memory_store.get_executions("stuck")
    assert row.state == RunState.CANCELLED


@pytest.mark.asyncio
async def test_cancel_pending_job(queue):
    await queue.push(make_job("waiting", lambda: None))

    assert await queue.cancel("waiting")
    assert queue.stats().pending == 0


@pytest.mark.asyncio
@pytest.mark.concurrency
async def test_concurrency_limit_and_scale(queue, recorder):
    release = asyncio.Event()

    async def blocked():
        await release.wait()

    await queue.scale(1)
    await queue.start()
    for i in range(3):
        await queue.push(make_job(f"job_{i}", blocked))

    await wait_until(lambda: queue.stats().running == 1)
    await asyncio.sleep(0.05)
    assert queue.stats().running == 1
    assert queue.stats().pending == 2

    await queue.scale(3)
    await wait_until(lambda: queue.stats().running == 3)
    assert queue.stats().available == 0

    release.set()
    await wait_until(lambda: queue.stats().completed == 3)
    assert recorder.names("scheduler.queue.") == ["scheduler.queue.scale", "scheduler.queue.scale"]

    with pytest.raises(ValueError):
        await queue.scale(0)


@pytest.mark.asyncio
@pytest.mark.concurrency
async def test_peak_concurrency_never_exceeds_limit(queue):
    active = 0
    peak = 0

    async def work():
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.02)
        active -= 1

    await queue.start()
    for i in range(8):
        await queue.push(make_job(f"w_{i}", work))
    await wait_until(lambda: queue.stats().completed == 8)

    assert peak == 2


@pytest.mark.asyncio
async def test_stop_waits_for_running_jobs(in_memory_store, telemetry):
    q = Queue("graceful", 1, store=in_memory_store, telemetry=telemetry)
    finished = []

    async def short():
        await asyncio.sleep(0.05)
        finished.append(1)

    await q.start()
    await q.push(make_job("short", short))
    await wait_until(lambda: q.stats().running == 1)
    await q.stop()

    assert finished == [1]


def test_concurrency_must_be_positive():
    with pytest.raises(ValueError):
        Queue("bad", 0)


# ==============================================================================
# Workflow jobs
# ==============================================================================


@pytest.mark.asyncio
async def test_workflow_job_runs_through_the_engine(queue, engine, in_memory_store):
    await engine.register(Workflow("report").step("build", lambda ctx: {"for": ctx["day"]}))
    queue.attach(engine=engine)

    job = Job(name="nightly_report", workflow="report", kwargs={"day": "mon"}, schedule=Schedule(every=60))
    await in_memory_store.put_job(job)
    await queue.start()
    await queue.push(job)
    await wait_until(lambda: queue.stats().completed == 1)

    stored = await in_memory_store.get_job("nightly_report")
    assert stored.last_result == {"day": "mon", "build": {"for": "mon"}}


@pytest.mark.asyncio
async def test_failed_workflow_job_is_dead_lettered(queue, engine, dlq):
    def broken(ctx):
        raise RuntimeError("no data")

    await engine.register(Workflow("fragile").step("x", broken, max_retries=0))
    queue.attach(engine=engine)

    job = Job(name="fragile_job", workflow="fragile", max_retries=0, schedule=Schedule(every=60))
    await queue.start()
    await queue.push(job)
    await wait_until(lambda: len(dlq) == 1)

    [entry] = await dlq.list()
    assert entry.workflow == "fragile"
    assert entry.error["type"] == WorkflowJobFailed.__qualname__
    assert "no data" in entry.error["message"]
