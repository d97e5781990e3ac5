"""
Retry policy configuration for steps and scheduler jobs.

Design Pattern: Strategy Pattern
RetryPolicy encapsulates retry behavior (how many times, how long to wait,
which errors qualify), so the engine and the queue share one retry loop
without knowing the strategy.

Attempts are counted from 1. ``max_retries = 2`` means three attempts in
total: the first try plus two retries.
"""

from __future__ import annotations

import random
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, cast


class Backoff(Enum):
    """How the base delay grows between retries."""

    FIXED = "fixed"
    """Constant ``delay``."""

    LINEAR = "linear"
    """``delay * attempt``."""

    EXPONENTIAL = "exponential"
    """``delay * 2 ** attempt``, capped by ``max_delay``."""

    def __str__(self) -> str:
        return self.value


# Custom backoff: (attempt, base_delay) -> delay in seconds
BackoffFn = Callable[[int, float], float]


@dataclass(frozen=True)
class RetryPolicy:
    """
    Configuration for retry behavior.

    Examples:
        # Named policy: predefined sensible defaults
        policy = RetryPolicy.STANDARD

        # Custom policy: full control
        policy = RetryPolicy(
            max_retries=5,
            delay=0.5,
            max_delay=30.0,
            backoff=Backoff.LINEAR,
            no_retry_on=(ValueError,),
        )
    """

    max_retries: int = 3
    """Retries after the first attempt. Zero disables retrying."""

    delay: float = 1.0
    """Base delay in seconds before a retry."""

    max_delay: float | None = 60.0
    """Upper bound on the computed delay in seconds (None for no cap)."""

    backoff: Backoff | BackoffFn = Backoff.EXPONENTIAL
    """Backoff kind, or a callable ``(attempt, delay) -> seconds``."""

    jitter: bool = False
    """Add up to 10% random extra delay."""

    retry_on: Sequence[Any] = ()
    """If non-empty, only these errors are retried.

    Entries are exception classes or reason values compared against an
    error's ``reason`` attribute (e.g. ``"timeout"``).
    """

    no_retry_on: Sequence[Any] = ()
    """Errors that are never retried. Takes precedence over ``retry_on``."""

    # =========================================================================
    # Predefined Policies
    # =========================================================================

    if TYPE_CHECKING:
        NONE: RetryPolicy
        STANDARD: RetryPolicy
        AGGRESSIVE: RetryPolicy
    else:
        NONE = cast("RetryPolicy", None)
        STANDARD = cast("RetryPolicy", None)
        AGGRESSIVE = cast("RetryPolicy", None)

    def delay_for_attempt(self, attempt: int) -> float | None:
        """
        Delay before retrying after ``attempt`` failed.

        Args:
            attempt: The attempt that just failed (1-indexed)

        Returns:
            Seconds to wait before the next attempt, or None if the retry
            budget is spent.

        Example:
            policy = RetryPolicy(max_retries=2, delay=1.0)
            policy.delay_for_attempt(1)  # 2.0
            policy.delay_for_attempt(2)  # 4.0
            policy.delay_for_attempt(3)  # None
        """
        if attempt > self.max_retries:
            return None

        if callable(self.backoff):
            delay = float(self.backoff(attempt, self.delay))
        elif self.backoff is Backoff.FIXED:
            delay = self.delay
        elif self.backoff is Backoff.LINEAR:
            delay = self.delay * attempt
        else:
            delay = self.delay * 2**attempt

        if self.max_delay is not None:
            delay = min(delay, self.max_delay)

        if self.jitter and delay > 0:
            delay += delay * random.uniform(0, 0.1)

        return delay

    def should_retry(self, error: BaseException) -> bool:
        """Classify ``error`` against ``retry_on`` / ``no_retry_on``."""
        if isinstance(error, RetryableError) and not error.is_retryable():
            return False
        if _matches(error, self.no_retry_on):
            return False
        if self.retry_on:
            return _matches(error, self.retry_on)
        return True

    def with_max_retries(self, max_retries: int) -> RetryPolicy:
        return RetryPolicy(
            max_retries=max_retries,
            delay=self.delay,
            max_delay=self.max_delay,
            backoff=self.backoff,
            jitter=self.jitter,
            retry_on=self.retry_on,
            no_retry_on=self.no_retry_on,
        )


def _matches(error: BaseException, entries: Sequence[Any]) -> bool:
    reason = getattr(error, "reason", None)
    for entry in entries:
        if isinstance(entry, type) and isinstance(error, entry):
            return True
        if not isinstance(entry, type) and reason is not None and reason == entry:
            return True
    return False


RetryPolicy.NONE = RetryPolicy(max_retries=0, delay=0.0, max_delay=0.0, backoff=Backoff.FIXED)

RetryPolicy.STANDARD = RetryPolicy(
    max_retries=3,
    delay=1.0,
    max_delay=30.0,
    backoff=Backoff.EXPONENTIAL,
)

RetryPolicy.AGGRESSIVE = RetryPolicy(
    max_retries=10,
    delay=0.1,
    max_delay=10.0,
    backoff=Backoff.EXPONENTIAL,
    jitter=True,
)


# =============================================================================
# RetryableError - Fine-grained error retry control
# =============================================================================


class RetryableError(Exception):
    """
    Base class for errors that decide whether they should be retried.

    Example:
        class PaymentError(RetryableError):
            def __init__(self, message: str, is_retryable: bool = True):
                super().__init__(message)
                self._retryable = is_retryable

            def is_retryable(self) -> bool:
                return self._retryable

        # Transient error - retried per policy
        raise PaymentError("Network timeout", is_retryable=True)

        # Permanent error - goes straight to the on_error policy
        raise PaymentError("Insufficient funds", is_retryable=False)
    """

    def is_retryable(self) -> bool:
        return True
