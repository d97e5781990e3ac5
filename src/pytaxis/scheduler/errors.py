"""Scheduler and queue exceptions."""

from __future__ import annotations

from pytaxis.errors import PytaxisError


class SchedulerError(PytaxisError):
    """Scheduler operation failed."""

    pass


class JobNotFound(SchedulerError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Job {name!r} not found")


class JobExists(SchedulerError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Job {name!r} already exists")


class InvalidJob(SchedulerError):
    """Job failed validation.

    Attributes:
        name: Job name as given
        problems: One message per violated rule
    """

    def __init__(self, name: str, problems: list[str]):
        self.name = name
        self.problems = problems
        super().__init__(f"Invalid job {name!r}: {'; '.join(problems)}")


class QueueError(PytaxisError):
    """Queue operation failed."""

    def __init__(self, queue: str, message: str):
        self.queue = queue
        super().__init__(message)


class QueuePaused(QueueError):
    def __init__(self, queue: str):
        super().__init__(queue, f"Queue {queue!r} is paused")


class QueueFull(QueueError):
    def __init__(self, queue: str, limit: int):
        self.limit = limit
        super().__init__(queue, f"Queue {queue!r} is full ({limit} pending)")


class QueueNotFound(QueueError):
    def __init__(self, queue: str):
        super().__init__(queue, f"Queue {queue!r} is not configured")
