"""
JobStore - abstract interface for scheduler persistence.

Design Pattern: Adapter Pattern
JobStore defines the target interface; InMemoryJobStore and SqliteJobStore
adapt a dict and a SQLite database to it.

Design Principle: Dependency Inversion
The Scheduler, Queue and WorkflowEngine depend on this abstraction, never
on a concrete backend, so tests run against InMemoryJobStore and
deployments swap in SqliteJobStore without touching callers.

The store is the durability boundary: a restarted Scheduler reloads its
jobs from here. Every mutation is atomic per key (one put replaces the
whole record; there are no partial-field updates).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING

from pytaxis.errors import PytaxisError
from pytaxis.models import Job, JobExecution, JobState, RunState

if TYPE_CHECKING:
    from pytaxis.workflow.definition import Workflow


class StorageError(PytaxisError):
    """Storage operation failed."""

    pass


class JobStore(ABC):
    """Abstract storage for jobs, job run history and workflow definitions."""

    # ========================================================================
    # Jobs
    # ========================================================================

    @abstractmethod
    async def get_job(self, name: str) -> Job | None:
        """Return the job named ``name``, or None."""
        pass

    @abstractmethod
    async def list_jobs(
        self,
        queue: str | None = None,
        state: JobState | None = None,
        tag: str | None = None,
        enabled: bool | None = None,
    ) -> list[Job]:
        """
        List jobs matching every given filter, ordered by name.

        Args:
            queue: Only jobs on this queue
            state: Only jobs in this state
            tag: Only jobs carrying this tag
            enabled: Only enabled (True) or disabled (False) jobs
        """
        pass

    @abstractmethod
    async def put_job(self, job: Job) -> None:
        """Insert or replace ``job`` (keyed by name)."""
        pass

    @abstractmethod
    async def delete_job(self, name: str) -> bool:
        """Delete a job. Returns False if it did not exist."""
        pass

    @abstractmethod
    async def get_due_jobs(self, now: datetime, limit: int | None = None) -> list[Job]:
        """
        Runnable jobs whose ``next_run_at`` is at or before ``now``.

        Ordered by priority (0 first), then next_run_at.
        """
        pass

    # ========================================================================
    # Run history
    # ========================================================================

    @abstractmethod
    async def record_execution(self, execution: JobExecution) -> None:
        """Insert or replace a history row (keyed by execution id)."""
        pass

    @abstractmethod
    async def get_executions(
        self, job_name: str, limit: int = 50, state: RunState | None = None
    ) -> list[JobExecution]:
        """History rows for ``job_name``, newest first."""
        pass

    @abstractmethod
    async def prune_executions(self, before: datetime) -> int:
        """Delete finished history rows that started before ``before``. Returns count."""
        pass

    # ========================================================================
    # Workflow definitions
    # ========================================================================

    @abstractmethod
    async def register_workflow(self, workflow: Workflow) -> None:
        """Make a built workflow discoverable by name."""
        pass

    @abstractmethod
    async def get_workflow(self, name: str) -> Workflow | None:
        pass

    @abstractmethod
    async def list_workflows(self) -> list[str]:
        pass

    @abstractmethod
    async def delete_workflow(self, name: str) -> bool:
        pass

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def reset(self) -> None:
        """Clear all data (for testing)."""
        pass

    async def close(self) -> None:
        """Release resources held by the store."""
        pass


def job_matches(
    job: Job,
    queue: str | None,
    state: JobState | None,
    tag: str | None,
    enabled: bool | None,
) -> bool:
    """Shared filter predicate for list_jobs implementations."""
    if queue is not None and job.queue != queue:
        return False
    if state is not None and job.state != state:
        return False
    if tag is not None and tag not in job.tags:
        return False
    if enabled is not None and job.enabled != enabled:
        return False
    return True
