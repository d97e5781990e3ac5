"""Data models shared by the engine, scheduler and stores."""

from pytaxis.models.dead_letter import DeadLetterEntry
from pytaxis.models.execution import Execution, ExecutionInfo
from pytaxis.models.job import Job, JobExecution, Schedule
from pytaxis.models.retry import Backoff, RetryableError, RetryPolicy
from pytaxis.models.status import ExecutionState, JobState, RunState, StepState

__all__ = [
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
]
