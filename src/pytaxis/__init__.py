"""
Pytaxis: asyncio job scheduler and DAG workflow orchestrator

Design Pattern: Façade Pattern
This module re-exports the public surface so applications import from one
place; the subpackages stay independent (the graph knows nothing about
workflows, the engine nothing about cron).

Package "taxis" (Greek: arrangement, order) describes what it provides.

Example:
    ```python
    import asyncio
    from pytaxis import Job, Schedule, Scheduler, Workflow, WorkflowEngine
    from pytaxis.storage import InMemoryJobStore

    def extract(ctx):
        return {"rows": 42}

    def load(ctx):
        return {"loaded": ctx["extract"]["rows"]}

    etl = Workflow("etl").step("extract", extract).step("load", load, after="extract")

    async def main():
        store = InMemoryJobStore()
        engine = WorkflowEngine(store)
        await engine.register(etl)

        scheduler = Scheduler(store, engine=engine)
        await scheduler.insert(
            Job("nightly_etl", workflow="etl", schedule=Schedule(cron="0 2 * * *"))
        )
        handle = await scheduler.start()
        ...
        await handle.shutdown()

    asyncio.run(main())
    ```
"""

from pytaxis import telemetry
from pytaxis.deadletter import (
    DeadLetterConfig,
    DeadLetterError,
    DeadLetterNotFound,
    DeadLetterQueue,
    DeadLetterStats,
    classify_error,
)
from pytaxis.errors import PytaxisError
from pytaxis.graph import CycleDetected, Graph, GraphError
from pytaxis.models import (
    Backoff,
    DeadLetterEntry,
    Execution,
    ExecutionInfo,
    ExecutionState,
    Job,
    JobExecution,
    JobState,
    RetryableError,
    RetryPolicy,
    RunState,
    Schedule,
    StepState,
)
from pytaxis.scheduler import (
    CronEvaluator,
    CroniterEvaluator,
    InvalidJob,
    JobExists,
    JobNotFound,
    LocalPeer,
    PeerElection,
    QueueError,
    QueueFull,
    QueueNotFound,
    QueuePaused,
    Scheduler,
    SchedulerConfig,
    SchedulerError,
    SchedulerHandle,
)
from pytaxis.storage import JobStore, StorageError
from pytaxis.telemetry import Telemetry
from pytaxis.workflow import (
    EngineConfig,
    Expand,
    Failed,
    MissingDependencies,
    OnError,
    Skip,
    Step,
    StepError,
    StepTimeoutError,
    Workflow,
    WorkflowEngine,
    WorkflowError,
    WorkflowNotFound,
)

__version__ = "0.1.0"

__all__ = [
    # Graph
    "Graph",
    "GraphError",
    "CycleDetected",
    # Workflows
    "Workflow",
    "Step",
    "OnError",
    "Expand",
    "Failed",
    "Skip",
    "WorkflowEngine",
    "EngineConfig",
    "WorkflowError",
    "WorkflowNotFound",
    "MissingDependencies",
    "StepError",
    "StepTimeoutError",
    # Scheduling
    "Scheduler",
    "SchedulerConfig",
    "SchedulerHandle",
    "SchedulerError",
    "InvalidJob",
    "JobExists",
    "JobNotFound",
    "QueueError",
    "QueueFull",
    "QueueNotFound",
    "QueuePaused",
    "CronEvaluator",
    "CroniterEvaluator",
    "PeerElection",
    "LocalPeer",
    # Dead letters
    "DeadLetterQueue",
    "DeadLetterConfig",
    "DeadLetterStats",
    "DeadLetterError",
    "DeadLetterNotFound",
    "classify_error",
    # Models
    "Backoff",
    "DeadLetterEntry",
    "Execution",
    "ExecutionInfo",
    "ExecutionState",
    "Job",
    "JobExecution",
    "JobState",
    "RetryPolicy",
    "RetryableError",
    "RunState",
    "Schedule",
    "StepState",
    # Storage
    "JobStore",
    "StorageError",
    # Telemetry
    "Telemetry",
    "telemetry",
    # Errors
    "PytaxisError",
    "__version__",
]
