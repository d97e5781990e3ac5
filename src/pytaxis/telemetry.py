"""
Telemetry event emission.

Design Pattern: Observer Pattern
Components emit structured events ``(event_name, measurements, metadata)``
and any number of handlers observe them. The core has no dependency on a
specific sink; attach a handler to log, count or export.

Event names are dotted strings:
    - workflow.execution.start / workflow.execution.stop
    - workflow.step.start / workflow.step.stop / workflow.step.exception
    - scheduler.job.start / scheduler.job.stop / scheduler.job.exception
    - scheduler.job.insert / scheduler.job.delete / scheduler.job.skip / scheduler.job.cancel
    - scheduler.queue.pause / scheduler.queue.resume / scheduler.queue.scale
    - scheduler.event
    - dead_letter.insert / dead_letter.retry / dead_letter.delete / dead_letter.prune

Example:
    ```python
    from pytaxis import telemetry

    def count(event, measurements, metadata):
        counters[event] += 1

    telemetry.attach("counter", count, prefix="dead_letter.")
    ```

A handler that raises is logged and detached so a broken sink cannot
break the emitter.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

Handler = Callable[[str, dict[str, Any], dict[str, Any]], None]


@dataclass
class _Attachment:
    handler: Handler
    prefix: str | None


class Telemetry:
    """A registry of event handlers."""

    def __init__(self) -> None:
        self._handlers: dict[str, _Attachment] = {}

    def attach(self, handler_id: str, handler: Handler, prefix: str | None = None) -> None:
        """Register ``handler`` for every event (or those starting with ``prefix``)."""
        if handler_id in self._handlers:
            raise ValueError(f"Telemetry handler {handler_id!r} already attached")
        self._handlers[handler_id] = _Attachment(handler, prefix)

    def detach(self, handler_id: str) -> bool:
        return self._handlers.pop(handler_id, None) is not None

    def handlers(self) -> list[str]:
        return list(self._handlers)

    def emit(
        self,
        event: str,
        measurements: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        measurements = measurements or {}
        metadata = metadata or {}
        for handler_id, attachment in list(self._handlers.items()):
            if attachment.prefix is not None and not event.startswith(attachment.prefix):
                continue
            try:
                attachment.handler(event, measurements, metadata)
            except Exception:
                logger.exception(f"Telemetry handler {handler_id!r} failed on {event}; detaching")
                self._handlers.pop(handler_id, None)

    @contextmanager
    def span(self, prefix: str, metadata: dict[str, Any] | None = None) -> Iterator[dict[str, Any]]:
        """
        Emit ``<prefix>.start`` now and ``<prefix>.stop`` (or
        ``<prefix>.exception``) when the block exits.

        The yielded dict is merged into the closing event's metadata.
        """
        metadata = dict(metadata or {})
        started = time.monotonic()
        self.emit(f"{prefix}.start", {"system_time": time.time()}, metadata)
        extra: dict[str, Any] = {}
        try:
            yield extra
        except BaseException as e:
            duration = time.monotonic() - started
            self.emit(
                f"{prefix}.exception",
                {"duration": duration},
                {**metadata, **extra, "kind": type(e).__name__, "reason": str(e)},
            )
            raise
        self.emit(f"{prefix}.stop", {"duration": time.monotonic() - started}, {**metadata, **extra})


def logging_handler(event: str, measurements: dict[str, Any], metadata: dict[str, Any]) -> None:
    """Write events to the ``pytaxis.telemetry`` logger at DEBUG."""
    logger.debug(f"{event} measurements={measurements} metadata={metadata}")


# Process-wide default registry
default = Telemetry()


def attach(handler_id: str, handler: Handler, prefix: str | None = None) -> None:
    default.attach(handler_id, handler, prefix)


def detach(handler_id: str) -> bool:
    return default.detach(handler_id)


def emit(
    event: str,
    measurements: dict[str, Any] | None = None,
    metadata: dict[str, Any] | None = None,
) -> None:
    default.emit(event, measurements, metadata)
