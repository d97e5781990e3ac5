"""
Dead-letter queue for work that exhausted its retries.

Entries are kept for inspection and replay. The store is bounded:
    - max_entries: at capacity the oldest entry is evicted so that an
      insert is never rejected
    - max_age: a background task prunes entries older than this

Secondary indices by queue and by job name keep filtered listing cheap.

Example:
    ```python
    dlq = DeadLetterQueue(DeadLetterConfig(max_entries=500), resubmit=scheduler.resubmit)
    await dlq.start()

    for entry in await dlq.list(queue="billing", limit=20):
        print(entry.id, entry.error["message"])

    await dlq.retry(entry.id)        # resubmits, then removes the entry
    await dlq.prune(before=cutoff)   # removes entries inserted before cutoff
    ```

Telemetry events: dead_letter.insert, dead_letter.retry,
dead_letter.delete, dead_letter.prune.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
import traceback
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from pytaxis import telemetry as telemetry_module
from pytaxis.errors import PytaxisError
from pytaxis.models.dead_letter import DeadLetterEntry
from pytaxis.models.retry import RetryableError
from pytaxis.telemetry import Telemetry

logger = logging.getLogger(__name__)

Resubmit = Callable[[DeadLetterEntry], Awaitable[Any]]


class DeadLetterError(PytaxisError):
    """Dead-letter operation failed."""

    pass


class DeadLetterNotFound(DeadLetterError):
    def __init__(self, entry_id: str):
        self.entry_id = entry_id
        super().__init__(f"Dead letter entry {entry_id!r} not found")


# =============================================================================
# Error classification
# =============================================================================

RETRYABLE_REASONS = frozenset(
    {"timeout", "connection_refused", "connection_reset", "rate_limited", "service_unavailable"}
)
TERMINAL_REASONS = frozenset(
    {"invalid_args", "not_found", "unauthorized", "forbidden", "validation_error"}
)
TRANSIENT_REASONS = frozenset({"busy", "overloaded", "try_again", "temporary_failure"})
TRANSIENT_MARKERS = ("busy", "overloaded", "try again", "temporarily")


def classify_error(error: BaseException) -> str:
    """
    Classify an error as retryable, terminal, transient or unknown.

    Checks, in order: an explicit RetryableError verdict, the error's
    ``reason`` attribute, the exception type, then the message text.
    """
    if isinstance(error, RetryableError):
        return "retryable" if error.is_retryable() else "terminal"

    reason = getattr(error, "reason", None)
    if isinstance(reason, str):
        if reason in RETRYABLE_REASONS:
            return "retryable"
        if reason in TERMINAL_REASONS:
            return "terminal"
        if reason in TRANSIENT_REASONS:
            return "transient"

    if isinstance(error, TimeoutError | ConnectionError):
        return "retryable"
    if isinstance(error, ValueError | TypeError | LookupError | PermissionError | NotImplementedError):
        return "terminal"

    message = str(error).lower()
    if any(marker in message for marker in TRANSIENT_MARKERS):
        return "transient"
    return "unknown"


def normalize_error(error: BaseException) -> dict[str, Any]:
    normalized: dict[str, Any] = {
        "type": type(error).__qualname__,
        "message": str(error),
    }
    reason = getattr(error, "reason", None)
    if reason is not None:
        normalized["reason"] = reason if isinstance(reason, str | int | float) else repr(reason)
    return normalized


# =============================================================================
# Configuration
# =============================================================================


@dataclass
class DeadLetterConfig:
    """Dead-letter queue limits and alerting."""

    max_entries: int = 10_000
    max_age: timedelta = field(default_factory=lambda: timedelta(days=30))
    prune_interval: float = 3600.0
    """Seconds between background prune passes."""

    prune_limit: int = 1000
    """Entries removed per prune call."""

    on_dead_letter: Callable[[DeadLetterEntry], Any] | None = None
    """Called (fire-and-forget) on every insert."""

    @classmethod
    def from_env(cls) -> DeadLetterConfig:
        """Read PYTAXIS_DLQ_MAX_ENTRIES and PYTAXIS_DLQ_MAX_AGE (seconds)."""
        config = cls()
        if value := os.environ.get("PYTAXIS_DLQ_MAX_ENTRIES"):
            config.max_entries = int(value)
        if value := os.environ.get("PYTAXIS_DLQ_MAX_AGE"):
            config.max_age = timedelta(seconds=float(value))
        return config

    def with_max_entries(self, max_entries: int) -> DeadLetterConfig:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = max_entries
        return self

    def with_max_age(self, max_age: timedelta) -> DeadLetterConfig:
        self.max_age = max_age
        return self

    def with_on_dead_letter(self, callback: Callable[[DeadLetterEntry], Any]) -> DeadLetterConfig:
        self.on_dead_letter = callback
        return self


@dataclass
class DeadLetterStats:
    total: int
    by_queue: dict[str, int]
    by_error_class: dict[str, int]
    max_entries: int
    max_age: timedelta
    oldest_inserted_at: datetime | None


@dataclass
class RetryAllResult:
    retried: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


# =============================================================================
# Queue
# =============================================================================


class DeadLetterQueue:
    """Bounded in-process dead-letter store."""

    def __init__(
        self,
        config: DeadLetterConfig | None = None,
        resubmit: Resubmit | None = None,
        telemetry: Telemetry | None = None,
    ):
        self._config = config or DeadLetterConfig()
        self._resubmit = resubmit
        self._telemetry = telemetry or telemetry_module.default
        self._entries: dict[str, DeadLetterEntry] = {}
        self._by_queue: dict[str, set[str]] = {}
        self._by_job: dict[str, set[str]] = {}
        self._retrying: set[str] = set()
        self._lock = asyncio.Lock()
        self._prune_task: asyncio.Task | None = None
        self._callback_tasks: set[asyncio.Task] = set()

    @property
    def config(self) -> DeadLetterConfig:
        return self._config

    def set_resubmit(self, resubmit: Resubmit) -> None:
        """Set the coroutine that replays an entry (usually Scheduler.resubmit)."""
        self._resubmit = resubmit

    def __len__(self) -> int:
        return len(self._entries)

    # =========================================================================
    # Insert
    # =========================================================================

    async def insert(self, entry: DeadLetterEntry) -> DeadLetterEntry:
        """Store ``entry``, evicting the oldest entry first when at capacity."""
        async with self._lock:
            while len(self._entries) >= self._config.max_entries:
                oldest = min(self._entries.values(), key=lambda e: e.inserted_at)
                self._remove(oldest.id)
                logger.warning(
                    f"Dead letter queue at capacity ({self._config.max_entries}); "
                    f"evicted oldest entry {oldest.id} ({oldest.job_name})"
                )
            self._entries[entry.id] = entry
            self._by_queue.setdefault(entry.queue, set()).add(entry.id)
            self._by_job.setdefault(entry.job_name, set()).add(entry.id)

        logger.warning(
            f"Dead-lettered {entry.job_name!r} on queue {entry.queue!r} after "
            f"{entry.attempts} attempt(s): {entry.error.get('message')}"
        )
        self._telemetry.emit(
            "dead_letter.insert",
            {"count": 1, "attempts": entry.attempts},
            {
                "entry_id": entry.id,
                "job_name": entry.job_name,
                "queue": entry.queue,
                "error_class": entry.error_class,
            },
        )
        self._notify(entry)
        return entry

    async def insert_failure(
        self,
        job_name: str,
        error: BaseException,
        *,
        queue: str = "default",
        func: Callable[..., Any] | None = None,
        workflow: str | None = None,
        args: tuple = (),
        kwargs: dict[str, Any] | None = None,
        attempts: int = 1,
        first_failed_at: datetime | None = None,
        stacktrace: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> DeadLetterEntry:
        """Build an entry from an exception and insert it."""
        now = datetime.now(UTC)
        if stacktrace is None and error.__traceback__ is not None:
            stacktrace = "".join(traceback.format_exception(error))
        entry = DeadLetterEntry(
            job_name=job_name,
            queue=queue,
            func=func,
            workflow=workflow,
            args=tuple(args),
            kwargs=dict(kwargs or {}),
            error=normalize_error(error),
            error_class=classify_error(error),
            attempts=attempts,
            first_failed_at=first_failed_at or now,
            last_failed_at=now,
            stacktrace=stacktrace,
            meta=dict(meta or {}),
        )
        return await self.insert(entry)

    def _notify(self, entry: DeadLetterEntry) -> None:
        callback = self._config.on_dead_letter
        if callback is None:
            return

        async def run() -> None:
            try:
                result = callback(entry)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"on_dead_letter callback failed for entry {entry.id}")

        task = asyncio.create_task(run())
        self._callback_tasks.add(task)
        task.add_done_callback(self._callback_tasks.discard)

    def _remove(self, entry_id: str) -> DeadLetterEntry | None:
        entry = self._entries.pop(entry_id, None)
        if entry is None:
            return None
        for index, key in ((self._by_queue, entry.queue), (self._by_job, entry.job_name)):
            ids = index.get(key)
            if ids is not None:
                ids.discard(entry_id)
                if not ids:
                    del index[key]
        return entry

    # =========================================================================
    # Query
    # =========================================================================

    async def list(
        self,
        queue: str | None = None,
        job_name: str | None = None,
        error_class: str | None = None,
        since: datetime | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[DeadLetterEntry]:
        """Entries matching every filter, newest first."""
        async with self._lock:
            entries = self._select(queue, job_name, error_class, since)
        entries.sort(key=lambda e: e.inserted_at, reverse=True)
        return entries[offset : offset + limit]

    def _select(
        self,
        queue: str | None,
        job_name: str | None,
        error_class: str | None,
        since: datetime | None,
    ) -> list[DeadLetterEntry]:
        if queue is not None and job_name is not None:
            ids = self._by_queue.get(queue, set()) & self._by_job.get(job_name, set())
        elif queue is not None:
            ids = self._by_queue.get(queue, set())
        elif job_name is not None:
            ids = self._by_job.get(job_name, set())
        else:
            ids = self._entries.keys()

        selected = []
        for entry_id in ids:
            entry = self._entries[entry_id]
            if error_class is not None and entry.error_class != error_class:
                continue
            if since is not None and entry.inserted_at < since:
                continue
            selected.append(entry)
        return selected

    async def get(self, entry_id: str) -> DeadLetterEntry:
        """Return an entry, raising DeadLetterNotFound if absent."""
        async with self._lock:
            entry = self._entries.get(entry_id)
        if entry is None:
            raise DeadLetterNotFound(entry_id)
        return entry

    async def get_or_none(self, entry_id: str) -> DeadLetterEntry | None:
        async with self._lock:
            return self._entries.get(entry_id)

    async def count(self) -> int:
        async with self._lock:
            return len(self._entries)

    async def stats(self) -> DeadLetterStats:
        async with self._lock:
            entries = list(self._entries.values())
        by_error_class: dict[str, int] = {}
        for entry in entries:
            by_error_class[entry.error_class] = by_error_class.get(entry.error_class, 0) + 1
        return DeadLetterStats(
            total=len(entries),
            by_queue={q: len(ids) for q, ids in self._by_queue.items()},
            by_error_class=by_error_class,
            max_entries=self._config.max_entries,
            max_age=self._config.max_age,
            oldest_inserted_at=min((e.inserted_at for e in entries), default=None),
        )

    # =========================================================================
    # Retry / delete / prune
    # =========================================================================

    async def retry(self, entry_id: str) -> Any:
        """
        Resubmit an entry, then remove it.

        The entry is removed only after the resubmit coroutine returns; if it
        raises, the entry stays and DeadLetterError is raised.

        Returns:
            Whatever the resubmit coroutine returned (e.g. an execution id)
        """
        if self._resubmit is None:
            raise DeadLetterError("No resubmit handler configured")

        async with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                raise DeadLetterNotFound(entry_id)
            if entry_id in self._retrying:
                raise DeadLetterError(f"Dead letter entry {entry_id!r} is already being retried")
            self._retrying.add(entry_id)

        try:
            result = await self._resubmit(entry)
        except Exception as e:
            logger.error(f"Resubmission of dead letter entry {entry_id} failed: {e}")
            raise DeadLetterError(f"Resubmission of {entry_id!r} failed: {e}") from e
        finally:
            async with self._lock:
                self._retrying.discard(entry_id)

        async with self._lock:
            self._remove(entry_id)

        logger.info(f"Retried dead letter entry {entry_id} ({entry.job_name})")
        self._telemetry.emit(
            "dead_letter.retry",
            {"count": 1},
            {"entry_id": entry_id, "job_name": entry.job_name, "queue": entry.queue},
        )
        return result

    async def retry_all(
        self,
        queue: str | None = None,
        job_name: str | None = None,
        error_class: str | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> RetryAllResult:
        """Retry up to ``limit`` matching entries, oldest first."""
        async with self._lock:
            entries = self._select(queue, job_name, error_class, since)
        entries.sort(key=lambda e: e.inserted_at)

        outcome = RetryAllResult()
        for entry in entries[:limit]:
            try:
                await self.retry(entry.id)
            except DeadLetterError as e:
                outcome.failed[entry.id] = str(e)
            else:
                outcome.retried.append(entry.id)
        return outcome

    async def delete(self, entry_id: str) -> bool:
        async with self._lock:
            entry = self._remove(entry_id)
        if entry is None:
            return False
        self._telemetry.emit(
            "dead_letter.delete",
            {"count": 1},
            {"entry_id": entry_id, "job_name": entry.job_name, "queue": entry.queue},
        )
        return True

    async def prune(self, before: datetime | None = None, limit: int | None = None) -> int:
        """
        Delete entries with ``inserted_at < before``, oldest first.

        Args:
            before: Cutoff (default: now - max_age)
            limit: Most entries removed by this call (default: config.prune_limit)

        Returns:
            Number of entries removed
        """
        cutoff = before or datetime.now(UTC) - self._config.max_age
        limit = self._config.prune_limit if limit is None else limit
        async with self._lock:
            stale = sorted(
                (e for e in self._entries.values() if e.inserted_at < cutoff),
                key=lambda e: e.inserted_at,
            )[:limit]
            for entry in stale:
                self._remove(entry.id)

        if stale:
            logger.info(f"Pruned {len(stale)} dead letter entries inserted before {cutoff}")
        self._telemetry.emit("dead_letter.prune", {"count": len(stale)}, {"before": cutoff})
        return len(stale)

    async def prune_expired(self, now: datetime | None = None) -> int:
        """Delete entries whose ``meta["expires_at"]`` has passed."""
        now = now or datetime.now(UTC)
        async with self._lock:
            expired = [
                e.id
                for e in self._entries.values()
                if isinstance(e.meta.get("expires_at"), datetime) and e.meta["expires_at"] <= now
            ]
            for entry_id in expired:
                self._remove(entry_id)
        if expired:
            self._telemetry.emit("dead_letter.prune", {"count": len(expired)}, {"expired": True})
        return len(expired)

    # =========================================================================
    # Background pruning
    # =========================================================================

    async def start(self) -> None:
        """Start the periodic prune task."""
        if self._prune_task is not None and not self._prune_task.done():
            return
        self._prune_task = asyncio.create_task(self._prune_loop(), name="pytaxis-dlq-prune")

    async def stop(self) -> None:
        if self._prune_task is None:
            return
        self._prune_task.cancel()
        try:
            await self._prune_task
        except asyncio.CancelledError:
            pass
        self._prune_task = None

    async def _prune_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.prune_interval)
            try:
                await self.prune()
                await self.prune_expired()
            except Exception as e:
                logger.error(f"Dead letter prune failed: {e}")
