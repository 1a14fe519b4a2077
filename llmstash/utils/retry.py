"""
Retry helpers.

Backoff strategies are plain iterators of delays (seconds). A strategy is
unbounded on its own; ``RetryPolicy`` caps it with ``max_retries`` so the
number of attempts is always finite: at most ``max_retries + 1``.
"""

from __future__ import annotations

import itertools
import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterator, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ExponentialBackoff:
    """Delays of ``base ** n`` milliseconds times ``factor``, capped at ``max_delay``."""

    def __init__(self, base_ms: int = 2, factor: int = 1, max_delay: Optional[float] = None):
        self._current = base_ms
        self.base = base_ms
        self.factor = factor
        self.max_delay = max_delay

    def __iter__(self) -> Iterator[float]:
        return self

    def __next__(self) -> float:
        delay = self._current * self.factor / 1000.0
        if self.max_delay is not None and delay > self.max_delay:
            return self.max_delay
        self._current *= self.base
        return delay


class FibonacciBackoff:
    """Delays following the Fibonacci sequence, in milliseconds times ``factor``."""

    def __init__(self, initial_ms: int = 1, factor: int = 1, max_delay: Optional[float] = None):
        self._current = initial_ms
        self._next = initial_ms
        self.factor = factor
        self.max_delay = max_delay

    def __iter__(self) -> Iterator[float]:
        return self

    def __next__(self) -> float:
        delay = self._current * self.factor / 1000.0
        if self.max_delay is not None and delay > self.max_delay:
            return self.max_delay
        self._current, self._next = self._next, self._current + self._next
        return delay


class FixedInterval:
    """Same delay every time."""

    def __init__(self, interval_ms: int):
        self.delay = interval_ms / 1000.0

    def __iter__(self) -> Iterator[float]:
        return self

    def __next__(self) -> float:
        return self.delay


@dataclass
class RetryPolicy:
    """Finite retry budget plus the backoff strategy used between attempts."""
    max_retries: int = 5
    strategy: str = "exponential"
    base_ms: int = 2
    factor: int = 500
    max_delay_seconds: float = 30.0

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        """Build from ``config.settings.RetrySettings``."""
        return cls(
            max_retries=settings.max_retries,
            strategy=settings.strategy,
            base_ms=settings.base_ms,
            factor=settings.factor,
            max_delay_seconds=settings.max_delay_seconds,
        )

    def delays(self) -> Iterator[float]:
        """Bounded iterator of delays, one per allowed retry."""
        if self.strategy == "exponential":
            backoff = ExponentialBackoff(self.base_ms, self.factor, self.max_delay_seconds)
        elif self.strategy == "fibonacci":
            backoff = FibonacciBackoff(self.base_ms, self.factor, self.max_delay_seconds)
        elif self.strategy == "fixed":
            backoff = FixedInterval(self.base_ms * self.factor)
        else:
            raise ValueError(f"Unknown backoff strategy: {self.strategy}")
        return itertools.islice(backoff, max(self.max_retries, 0))


@dataclass
class RetryOutcome:
    """Result of ``retry_call`` with the number of attempts it took."""
    value: object
    attempts: int


def retry_call(
    action: Callable[[], T],
    policy: RetryPolicy,
    should_retry: Callable[[Exception], bool],
    *,
    label: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Optional[Callable[[int, Exception, float], None]] = None,
) -> RetryOutcome:
    """
    Run ``action`` until it succeeds, the error isn't retryable, or the
    policy runs out of delays.

    Args:
        action: Zero-argument callable to run
        policy: Retry budget and backoff
        should_retry: Predicate deciding whether an exception is transient
        label: Name used in log messages
        sleep: Sleep function (tests pass a no-op)
        on_retry: Optional callback(attempt, error, delay) before each retry

    Returns:
        RetryOutcome with the action's value and the attempt count

    Raises:
        The last exception raised by ``action``. An ``attempts`` attribute is
        set on it when it has one.
    """
    delays = policy.delays()
    attempt = 0
    while True:
        attempt += 1
        try:
            return RetryOutcome(value=action(), attempts=attempt)
        except Exception as e:
            if not should_retry(e):
                raise
            delay = next(delays, None)
            if delay is None:
                logger.warning(
                    f"[retry] {label} failed, giving up after {attempt} attempt(s): {e}"
                )
                if hasattr(e, "attempts"):
                    e.attempts = attempt
                raise
            logger.warning(
                f"[retry] {label} failed (attempt {attempt}/{policy.max_retries + 1}), "
                f"retrying in {delay:.2f}s: {e}"
            )
            if on_retry:
                on_retry(attempt, e, delay)
            sleep(delay)
