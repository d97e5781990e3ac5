"""In-memory JobStore.

Design Pattern: Adapter Pattern
InMemoryJobStore adapts dictionaries to the JobStore interface.

State is lost when the process exits. Records are copied on the way in and
out so callers never share mutable state with the store.
"""

from __future__ import annotations

import asyncio
import copy
from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from pytaxis.models import Job, JobExecution, JobState, RunState
from pytaxis.storage.base import JobStore, job_matches

if TYPE_CHECKING:
    from pytaxis.workflow.definition import Workflow


class InMemoryJobStore(JobStore):
    """In-memory storage for tests and single-process deployments.

    Usage:
        store = InMemoryJobStore()
        await store.put_job(job)
    """

    def __init__(self):
        self._jobs: dict[str, Job] = {}
        self._executions: dict[UUID, JobExecution] = {}
        self._workflows: dict[str, Workflow] = {}
        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"InMemoryJobStore(jobs={len(self._jobs)}, workflows={len(self._workflows)})"

    async def get_job(self, name: str) -> Job | None:
        async with self._lock:
            job = self._jobs.get(name)
            return copy.copy(job) if job is not None else None

    async def list_jobs(
        self,
        queue: str | None = None,
        state: JobState | None = None,
        tag: str | None = None,
        enabled: bool | None = None,
    ) -> list[Job]:
        async with self._lock:
            return [
                copy.copy(job)
                for name, job in sorted(self._jobs.items())
                if job_matches(job, queue, state, tag, enabled)
            ]

    async def put_job(self, job: Job) -> None:
        async with self._lock:
            self._jobs[job.name] = copy.copy(job)

    async def delete_job(self, name: str) -> bool:
        async with self._lock:
            return self._jobs.pop(name, None) is not None

    async def get_due_jobs(self, now: datetime, limit: int | None = None) -> list[Job]:
        async with self._lock:
            due = [copy.copy(job) for job in self._jobs.values() if job.is_due(now)]
        due.sort(key=lambda j: (j.priority, j.next_run_at))
        return due[:limit] if limit is not None else due

    async def record_execution(self, execution: JobExecution) -> None:
        async with self._lock:
            self._executions[execution.id] = copy.copy(execution)

    async def get_executions(
        self, job_name: str, limit: int = 50, state: RunState | None = None
    ) -> list[JobExecution]:
        async with self._lock:
            rows = [
                copy.copy(e)
                for e in self._executions.values()
                if e.job_name == job_name and (state is None or e.state == state)
            ]
        rows.sort(key=lambda e: e.started_at, reverse=True)
        return rows[:limit]

    async def prune_executions(self, before: datetime) -> int:
        async with self._lock:
            stale = [
                id_
                for id_, e in self._executions.items()
                if e.state.is_terminal and e.started_at < before
            ]
            for id_ in stale:
                del self._executions[id_]
            return len(stale)

    async def register_workflow(self, workflow: Workflow) -> None:
        async with self._lock:
            self._workflows[workflow.name] = workflow

    async def get_workflow(self, name: str) -> Workflow | None:
        async with self._lock:
            return self._workflows.get(name)

    async def list_workflows(self) -> list[str]:
        async with self._lock:
            return sorted(self._workflows)

    async def delete_workflow(self, name: str) -> bool:
        async with self._lock:
            return self._workflows.pop(name, None) is not None

    async def reset(self) -> None:
        async with self._lock:
            self._jobs.clear()
            self._executions.clear()
            self._workflows.clear()
