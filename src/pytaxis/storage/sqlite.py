"""SQLite-backed JobStore.

Design Pattern: Adapter Pattern
SqliteJobStore adapts a SQLite database to the JobStore interface.

Implementation details:
- aiosqlite for async operations
- WAL mode for concurrent reads
- Jobs and history rows are pickled into a BLOB column; the columns
  used for filtering (queue, state, next_run_at, ...) are stored beside it
- INTEGER millisecond timestamps
- Workflow definitions hold callables and closures, so only a catalog row
  is persisted; the definition objects stay in process memory and must be
  registered again after a restart

Job callables must be picklable (module-level functions).
"""

from __future__ import annotations

import asyncio
import pickle
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import aiosqlite

from pytaxis.models import Job, JobExecution, JobState, RunState
from pytaxis.storage.base import JobStore, StorageError

if TYPE_CHECKING:
    from pytaxis.workflow.definition import Workflow


def _millis(value: datetime | None) -> int | None:
    return int(value.timestamp() * 1000) if value is not None else None


class SqliteJobStore(JobStore):
    """SQLite-backed durable storage.

    After __init__, the instance is not yet usable. Call connect() first.

    Usage:
        store = SqliteJobStore("scheduler.db")
        await store.connect()
        try:
            await store.put_job(job)
        finally:
            await store.close()
    """

    def __init__(self, db_path: str):
        """Initialize storage (connection not opened yet).

        Args:
            db_path: Path to SQLite database file, or ":memory:"
        """
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self._workflows: dict[str, Workflow] = {}

    @classmethod
    async def in_memory(cls) -> SqliteJobStore:
        """
        Create a connected in-memory store for testing.

        Example:
            store = await SqliteJobStore.in_memory()
        """
        instance = cls(":memory:")
        await instance.connect()
        return instance

    def __repr__(self) -> str:
        if self.db_path == ":memory:":
            return "SqliteJobStore(in-memory)"
        return f"SqliteJobStore({self.db_path})"

    async def connect(self) -> None:
        """Open database connection and initialize schema.

        Pattern: Template Method
        Fixed initialization sequence:
        1. Open connection
        2. Enable WAL mode
        3. Create tables and indexes
        """
        if self._connection is not None:
            return

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(
            self.db_path,
            timeout=5.0,
            isolation_level=None,
        )

        # In-memory databases report "memory" and cannot use WAL
        cursor = await self._connection.execute("PRAGMA journal_mode=WAL")
        result = await cursor.fetchone()
        await cursor.close()
        if result:
            mode = result[0].upper()
            if mode not in ("WAL", "MEMORY"):
                raise StorageError(f"Failed to enable WAL mode, got: {result[0]}")

        await self._connection.execute("PRAGMA synchronous=NORMAL")
        await self._connection.execute("PRAGMA busy_timeout=5000")

        await self._create_schema()
        await self._connection.commit()

    async def _create_schema(self) -> None:
        """Create tables and indexes.

        Schema design:
        - jobs: one row per job name, filter columns + pickled Job
        - job_executions: run history, filter columns + pickled JobExecution
        - workflows: catalog of registered workflow names
        """
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS jobs (
                name TEXT PRIMARY KEY,
                queue TEXT NOT NULL,
                state TEXT CHECK( state IN ('active','paused','disabled') ) NOT NULL,
                enabled INTEGER NOT NULL,
                paused INTEGER NOT NULL,
                priority INTEGER NOT NULL DEFAULT 0,
                next_run_at INTEGER,
                tags TEXT NOT NULL DEFAULT '',
                data BLOB NOT NULL
            )
        """)

        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_jobs_due
            ON jobs(state, enabled, paused, next_run_at)
        """)

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS job_executions (
                id TEXT PRIMARY KEY,
                job_name TEXT NOT NULL,
                state TEXT CHECK( state IN (
                    'running','completed','failed','cancelled'
                ) ) NOT NULL,
                started_at INTEGER NOT NULL,
                data BLOB NOT NULL
            )
        """)

        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_job_executions_job
            ON job_executions(job_name, started_at)
        """)

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS workflows (
                name TEXT PRIMARY KEY,
                step_count INTEGER NOT NULL,
                tags TEXT NOT NULL DEFAULT '',
                registered_at INTEGER NOT NULL
            )
        """)

    def _check_connected(self) -> aiosqlite.Connection:
        """Guard clause: Ensure connection is open."""
        if self._connection is None:
            raise StorageError("Not connected. Call connect() first.")
        return self._connection

    @staticmethod
    def _dumps(value: Any) -> bytes:
        try:
            return pickle.dumps(value)
        except (pickle.PicklingError, AttributeError, TypeError) as e:
            raise StorageError(f"Cannot serialize {type(value).__name__}: {e}") from e

    @staticmethod
    def _loads(data: bytes) -> Any:
        try:
            return pickle.loads(data)
        except (pickle.UnpicklingError, AttributeError, ModuleNotFoundError) as e:
            raise StorageError(f"Cannot deserialize stored record: {e}") from e

    # ========================================================================
    # Jobs
    # ========================================================================

    async def get_job(self, name: str) -> Job | None:
        conn = self._check_connected()
        async with self._lock:
            cursor = await conn.execute("SELECT data FROM jobs WHERE name = ?", (name,))
            row = await cursor.fetchone()
            await cursor.close()
        return self._loads(row[0]) if row else None

    async def list_jobs(
        self,
        queue: str | None = None,
        state: JobState | None = None,
        tag: str | None = None,
        enabled: bool | None = None,
    ) -> list[Job]:
        conn = self._check_connected()
        clauses: list[str] = []
        params: list[Any] = []
        if queue is not None:
            clauses.append("queue = ?")
            params.append(queue)
        if state is not None:
            clauses.append("state = ?")
            params.append(state.value)
        if enabled is not None:
            clauses.append("enabled = ?")
            params.append(int(enabled))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        async with self._lock:
            cursor = await conn.execute(f"SELECT data FROM jobs {where} ORDER BY name", params)
            rows = await cursor.fetchall()
            await cursor.close()

        jobs = [self._loads(row[0]) for row in rows]
        if tag is not None:
            jobs = [job for job in jobs if tag in job.tags]
        return jobs

    async def put_job(self, job: Job) -> None:
        conn = self._check_connected()
        data = self._dumps(job)
        async with self._lock:
            await conn.execute(
                """
                INSERT OR REPLACE INTO jobs (
                    name, queue, state, enabled, paused, priority, next_run_at, tags, data
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    job.name,
                    job.queue,
                    job.state.value,
                    int(job.enabled),
                    int(job.paused),
                    job.priority,
                    _millis(job.next_run_at),
                    ",".join(job.tags),
                    data,
                ),
            )
            await conn.commit()

    async def delete_job(self, name: str) -> bool:
        conn = self._check_connected()
        async with self._lock:
            cursor = await conn.execute("DELETE FROM jobs WHERE name = ?", (name,))
            deleted = cursor.rowcount > 0
            await cursor.close()
            await conn.commit()
        return deleted

    async def get_due_jobs(self, now: datetime, limit: int | None = None) -> list[Job]:
        conn = self._check_connected()
        sql = """
            SELECT data FROM jobs
            WHERE state = 'active' AND enabled = 1 AND paused = 0
              AND next_run_at IS NOT NULL AND next_run_at <= ?
            ORDER BY priority ASC, next_run_at ASC
        """
        params: list[Any] = [_millis(now)]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        async with self._lock:
            cursor = await conn.execute(sql, params)
            rows = await cursor.fetchall()
            await cursor.close()
        return [self._loads(row[0]) for row in rows]

    # ========================================================================
    # Run history
    # ========================================================================

    async def record_execution(self, execution: JobExecution) -> None:
        conn = self._check_connected()
        data = self._dumps(execution)
        async with self._lock:
            await conn.execute(
                """
                INSERT OR REPLACE INTO job_executions (id, job_name, state, started_at, data)
                VALUES (?, ?, ?, ?, ?)
            """,
                (
                    str(execution.id),
                    execution.job_name,
                    execution.state.value,
                    _millis(execution.started_at),
                    data,
                ),
            )
            await conn.commit()

    async def get_executions(
        self, job_name: str, limit: int = 50, state: RunState | None = None
    ) -> list[JobExecution]:
        conn = self._check_connected()
        sql = "SELECT data FROM job_executions WHERE job_name = ?"
        params: list[Any] = [job_name]
        if state is not None:
            sql += " AND state = ?"
            params.append(state.value)
        sql += " ORDER BY started_at DESC LIMIT ?"
        params.append(limit)
        async with self._lock:
            cursor = await conn.execute(sql, params)
            rows = await cursor.fetchall()
            await cursor.close()
        return [self._loads(row[0]) for row in rows]

    async def prune_executions(self, before: datetime) -> int:
        conn = self._check_connected()
        async with self._lock:
            cursor = await conn.execute(
                "DELETE FROM job_executions WHERE state != 'running' AND started_at < ?",
                (_millis(before),),
            )
            count = cursor.rowcount
            await cursor.close()
            await conn.commit()
        return count

    # ========================================================================
    # Workflow definitions
    # ========================================================================

    async def register_workflow(self, workflow: Workflow) -> None:
        conn = self._check_connected()
        async with self._lock:
            await conn.execute(
                """
                INSERT OR REPLACE INTO workflows (name, step_count, tags, registered_at)
                VALUES (?, ?, ?, ?)
            """,
                (
                    workflow.name,
                    len(workflow.steps),
                    ",".join(workflow.tags),
                    _millis(datetime.now(UTC)),
                ),
            )
            await conn.commit()
            self._workflows[workflow.name] = workflow

    async def get_workflow(self, name: str) -> Workflow | None:
        return self._workflows.get(name)

    async def list_workflows(self) -> list[str]:
        conn = self._check_connected()
        async with self._lock:
            cursor = await conn.execute("SELECT name FROM workflows ORDER BY name")
            rows = await cursor.fetchall()
            await cursor.close()
        return [row[0] for row in rows]

    async def delete_workflow(self, name: str) -> bool:
        conn = self._check_connected()
        async with self._lock:
            cursor = await conn.execute("DELETE FROM workflows WHERE name = ?", (name,))
            deleted = cursor.rowcount > 0
            await cursor.close()
            await conn.commit()
            self._workflows.pop(name, None)
        return deleted

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def reset(self) -> None:
        """Clear all data (for testing/demos)."""
        conn = self._check_connected()
        async with self._lock:
            await conn.execute("DELETE FROM jobs")
            await conn.execute("DELETE FROM job_executions")
            await conn.execute("DELETE FROM workflows")
            await conn.commit()
            self._workflows.clear()

    async def close(self) -> None:
        """Close the connection. Explicit resource cleanup, not relying on GC."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
