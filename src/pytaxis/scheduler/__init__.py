"""Job scheduling: triggers, queues and the leader-gated tick."""

from pytaxis.scheduler.errors import (
    InvalidJob,
    JobExists,
    JobNotFound,
    QueueError,
    QueueFull,
    QueueNotFound,
    QueuePaused,
    SchedulerError,
)
from pytaxis.scheduler.peers import LocalPeer, PeerElection, PeerInfo
from pytaxis.scheduler.queue import Queue, QueueStats, WorkflowJobFailed
from pytaxis.scheduler.scheduler import (
    Scheduler,
    SchedulerConfig,
    SchedulerHandle,
    SchedulerStatus,
    parse_queues,
)
from pytaxis.scheduler.triggers import CronEvaluator, CroniterEvaluator, next_run_at

__all__ = [
    "CronEvaluator",
    "CroniterEvaluator",
    "InvalidJob",
    "JobExists",
    "JobNotFound",
    "LocalPeer",
    "PeerElection",
    "PeerInfo",
    "Queue",
    "QueueError",
    "QueueFull",
    "QueueNotFound",
    "QueuePaused",
    "QueueStats",
    "Scheduler",
    "SchedulerConfig",
    "SchedulerError",
    "SchedulerHandle",
    "SchedulerStatus",
    "WorkflowJobFailed",
    "next_run_at",
    "parse_queues",
]
