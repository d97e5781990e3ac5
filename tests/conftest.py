"""
Pytest configuration and fixtures for pytaxis tests.

Provides reusable fixtures for stores, the workflow engine, the dead-letter
queue and a telemetry recorder.
"""

import shutil
import tempfile
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest

from pytaxis.deadletter import DeadLetterConfig, DeadLetterQueue
from pytaxis.storage import InMemoryJobStore, SqliteJobStore
from pytaxis.telemetry import Telemetry
from pytaxis.workflow import EngineConfig, WorkflowEngine


@pytest.fixture
async def in_memory_store() -> AsyncGenerator[InMemoryJobStore, None]:
    """Async in-memory store fixture with automatic cleanup."""
    store = InMemoryJobStore()
    yield store
    await store.reset()


@pytest.fixture
async def sqlite_memory_store() -> AsyncGenerator[SqliteJobStore, None]:
    """Async SQLite in-memory store fixture with automatic cleanup."""
    store = await SqliteJobStore.in_memory()
    yield store
    await store.close()


@pytest.fixture
def temp_db_path():
    """Temporary database file path with automatic cleanup."""
    tmpdir = Path(tempfile.mkdtemp())
    yield tmpdir / "test.db"
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture(params=["memory", "sqlite"])
async def store(request, temp_db_path) -> AsyncGenerator:
    """Both JobStore adapters, for contract tests."""
    if request.param == "memory":
        backend = InMemoryJobStore()
    else:
        backend = SqliteJobStore(str(temp_db_path))
        await backend.connect()
    yield backend
    await backend.close()


class Recorder:
    """Telemetry handler that keeps every event it sees."""

    def __init__(self):
        self.events: list[tuple[str, dict, dict]] = []

    def __call__(self, event, measurements, metadata):
        self.events.append((event, measurements, metadata))

    def names(self, prefix: str = "") -> list[str]:
        return [event for event, _, _ in self.events if event.startswith(prefix)]


@pytest.fixture
def telemetry() -> Telemetry:
    """Isolated telemetry bus so tests never see each other's events."""
    return Telemetry()


@pytest.fixture
def recorder(telemetry: Telemetry) -> Recorder:
    rec = Recorder()
    telemetry.attach("test-recorder", rec)
    return rec


@pytest.fixture
async def dlq(telemetry: Telemetry) -> AsyncGenerator[DeadLetterQueue, None]:
    queue = DeadLetterQueue(DeadLetterConfig(max_entries=100), telemetry=telemetry)
    yield queue
    await queue.stop()


@pytest.fixture
async def engine(
    in_memory_store: InMemoryJobStore, telemetry: Telemetry
) -> AsyncGenerator[WorkflowEngine, None]:
    """Engine with a small step bound; unfinished executions are cancelled afterwards."""
    eng = WorkflowEngine(in_memory_store, EngineConfig(step_concurrency=5), telemetry=telemetry)
    yield eng
    await eng.shutdown()
