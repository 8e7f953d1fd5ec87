"""
Failure policies: circuit breaker for backend flushes and retry backoff for
local journal writes.
"""

from __future__ import annotations

import random
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterator

from loguru import logger


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class CircuitBreaker:
    """Closed/open/half-open breaker gating normal-priority flushes.

    closed -> open after ``failure_threshold`` consecutive failures.
    open -> half-open once ``reset_timeout`` seconds passed since the last failure.
    half-open -> closed after ``success_threshold`` successes, -> open on any failure.

    Critical flushes never ask the breaker for permission; they only report
    their outcome so that the breaker reflects backend health.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        success_threshold: int = 2,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if failure_threshold <= 0:
            raise ValueError("failure_threshold must be > 0")
        if success_threshold <= 0:
            raise ValueError("success_threshold must be > 0")
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.success_threshold = success_threshold
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time: float | None = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def success_count(self) -> int:
        return self._success_count

    @property
    def last_failure_time(self) -> float | None:
        return self._last_failure_time

    @property
    def is_open(self) -> bool:
        return self._state is CircuitState.OPEN

    def can_execute(self) -> bool:
        """Whether a normal-priority attempt may run now.

        Moves an open circuit to half-open once the reset timeout has elapsed.
        Half-open admits a single trial until its outcome is recorded.
        """
        if self._state is CircuitState.OPEN:
            elapsed = self._clock() - (self._last_failure_time or 0.0)
            if elapsed < self.reset_timeout:
                return False
            self._state = CircuitState.HALF_OPEN
            self._success_count = 0
            logger.warning("Circuit breaker entering half-open state")
        if self._state is CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                return False
            self._trial_in_flight = True
        return True

    def record_success(self) -> None:
        self._trial_in_flight = False
        if self._state is CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self.success_threshold:
                self._state = CircuitState.CLOSED
                self._failure_count = 0
                self._success_count = 0
                logger.info("Circuit breaker closed - backend healthy")
        elif self._state is CircuitState.CLOSED:
            self._failure_count = 0

    def record_failure(self) -> None:
        self._trial_in_flight = False
        self._last_failure_time = self._clock()
        self._failure_count += 1
        self._success_count = 0

        if self._state is CircuitState.HALF_OPEN:
            self._state = CircuitState.OPEN
            logger.error("Circuit breaker re-opened - half-open trial failed")
        elif (
            self._state is CircuitState.CLOSED
            and self._failure_count >= self.failure_threshold
        ):
            self._state = CircuitState.OPEN
            logger.error(
                f"Circuit breaker OPENED - backend unavailable "
                f"(failures={self._failure_count} threshold={self.failure_threshold} "
                f"reset_timeout={self.reset_timeout}s)"
            )

    @contextmanager
    def force_closed(self) -> Iterator[None]:
        """Temporarily treat the circuit as closed, restoring the prior state."""
        saved = self._state
        self._state = CircuitState.CLOSED
        self._trial_in_flight = False
        try:
            yield
        finally:
            self._state = saved


def default_retry_classifier(exc: Exception) -> bool:
    """Transient local I/O conditions worth another attempt."""
    if isinstance(exc, OSError):
        return True
    msg = str(exc).lower()
    return any(s in msg for s in ("temporary", "try again", "busy"))


@dataclass
class RetryPolicy:
    """Exponential backoff with optional jitter."""

    max_attempts: int = 3
    initial_backoff_ms: int = 50
    max_backoff_ms: int = 2000
    backoff_multiplier: float = 2.0
    jitter: bool = True
    classify_retryable: Callable[[Exception], bool] = field(
        default=default_retry_classifier
    )

    def next_backoff_ms(self, attempt: int) -> int:
        """Backoff before attempt ``attempt + 1`` (attempts are 1-based)."""
        raw = self.initial_backoff_ms * (self.backoff_multiplier ** max(0, attempt - 1))
        capped = min(int(raw), self.max_backoff_ms)
        if self.jitter:
            return int(random.uniform(capped * 0.5, capped))
        return capped
