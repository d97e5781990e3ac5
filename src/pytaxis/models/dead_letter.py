"""Dead-letter entry record."""

from __future__ import annotations

import secrets
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any


def new_entry_id() -> str:
    """16 lowercase hex characters."""
    return secrets.token_hex(8)


@dataclass
class DeadLetterEntry:
    """
    Work that exhausted its retries, kept for inspection and replay.

    Either ``func`` (a scheduler job) or ``workflow`` (a workflow
    execution) identifies what to resubmit on retry.
    """

    job_name: str
    queue: str = "default"
    func: Callable[..., Any] | None = None
    workflow: str | None = None
    args: tuple = ()
    kwargs: dict[str, Any] = field(default_factory=dict)

    error: dict[str, Any] = field(default_factory=dict)
    """Normalized error: ``{"type": ..., "message": ...}``."""

    error_class: str = "unknown"
    """retryable, terminal, transient or unknown."""

    attempts: int = 1
    first_failed_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_failed_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    stacktrace: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_entry_id)
    inserted_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __repr__(self) -> str:
        return (
            f"DeadLetterEntry(id={self.id!r}, job_name={self.job_name!r}, "
            f"queue={self.queue!r}, error_class={self.error_class!r}, "
            f"attempts={self.attempts})"
        )
