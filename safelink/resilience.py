"""Client-side protection for calls to the threat-check API.

State Machine — CircuitBreaker
==============================
::
                 failure_count >= threshold
    ┌────────┐ ─────────────────────────────▶ ┌────────┐
    │ CLOSED │                                │  OPEN  │──┐ before_call() while
    └────────┘ ◀──────┐                       └────────┘◀─┘ now < next_attempt_time
        ▲             │ success                    │        → CIRCUIT_BREAKER_OPEN
        │             │                            │ before_call() after cool-down
        │        ┌───────────┐                     │
        └────────│ HALF_OPEN │◀────────────────────┘
       success   └───────────┘
                       │ failure → failure_count + 1 → OPEN again

Rate Limiter
============
A conservative token count per rolling window. The upstream does not expose
its quota in headers, so the budget is tracked locally. Exhaustion is
reported immediately; calls are never queued.

Both objects hold mutable state that only means something when shared, so
the process keeps a single ``ThreatCheckClient`` (and therefore a single
breaker and limiter).
"""

import logging
import math
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from prometheus_client import Gauge

from safelink.enums import CircuitState, ThreatErrorCode
from safelink.exceptions import ThreatCheckError
from safelink.schemas import CircuitBreakerInfo, RateLimitInfo

__all__ = ["Clock", "utcnow", "CircuitBreaker", "RateLimiter"]

logger = logging.getLogger("safelink.resilience")

Clock = Callable[[], datetime]

CIRCUIT_BREAKER_STATE = Gauge(
    "safelink_circuit_breaker_state",
    "Threat-check circuit breaker state (0=closed, 1=half-open, 2=open)",
)
_STATE_GAUGE_VALUES = {CircuitState.CLOSED: 0, CircuitState.HALF_OPEN: 1, CircuitState.OPEN: 2}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CircuitBreaker:
    """Stop calling a failing dependency for a cool-down period."""

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0, clock: Clock = utcnow):
        assert failure_threshold >= 1, f"failure_threshold must be >= 1, got {failure_threshold!r}"
        self.failure_threshold = failure_threshold
        self.recovery_timeout = timedelta(seconds=recovery_timeout)
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: datetime | None = None
        self._next_attempt_time: datetime | None = None
        self._publish_state()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def before_call(self) -> None:
        """Reject the call while OPEN; move to HALF_OPEN once the cool-down has passed.

        Raises:
            ThreatCheckError: ``CIRCUIT_BREAKER_OPEN`` during the cool-down.
        """
        if self._state is not CircuitState.OPEN:
            return

        now = self._clock()
        if self._next_attempt_time is not None and now < self._next_attempt_time:
            retry_after = math.ceil((self._next_attempt_time - now).total_seconds())
            raise ThreatCheckError(
                "Service temporarily unavailable due to repeated failures",
                ThreatErrorCode.CIRCUIT_BREAKER_OPEN,
                retry_after=retry_after,
            )

        logger.info("Circuit breaker cool-down elapsed, allowing a trial request")
        self._state = CircuitState.HALF_OPEN
        self._publish_state()

    def record_success(self) -> None:
        if self._state is not CircuitState.CLOSED:
            logger.info(f"Circuit breaker closing after successful call (was {self._state.value})")
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time = None
        self._next_attempt_time = None
        self._publish_state()

    def record_failure(self) -> None:
        now = self._clock()
        self._failure_count += 1
        self._last_failure_time = now

        if self._failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN
            self._next_attempt_time = now + self.recovery_timeout
            logger.warning(
                f"Circuit breaker opened after {self._failure_count} consecutive failures; "
                f"next attempt at {self._next_attempt_time.isoformat()}"
            )
        self._publish_state()

    def info(self) -> CircuitBreakerInfo:
        return CircuitBreakerInfo(
            state=self._state,
            failure_count=self._failure_count,
            last_failure_time=self._last_failure_time,
            next_attempt_time=self._next_attempt_time,
        )

    def _publish_state(self) -> None:
        CIRCUIT_BREAKER_STATE.set(_STATE_GAUGE_VALUES[self._state])


class RateLimiter:
    """Fixed budget of upstream calls per window."""

    def __init__(self, limit: int = 1000, window: float = 60.0, clock: Clock = utcnow):
        assert limit >= 1, f"limit must be >= 1, got {limit!r}"
        self.limit = limit
        self.window = timedelta(seconds=window)
        self._clock = clock
        self._remaining = limit
        self._reset_time = clock() + self.window

    @property
    def remaining(self) -> int:
        return self._remaining

    def acquire(self) -> None:
        """Check that the current window still has budget.

        Raises:
            ThreatCheckError: ``RATE_LIMIT_EXCEEDED`` with a ``retry_after`` hint.
        """
        now = self._refresh()
        if self._remaining <= 0:
            wait_seconds = max(0, math.ceil((self._reset_time - now).total_seconds()))
            raise ThreatCheckError(
                f"Rate limit exceeded. Try again in {wait_seconds} seconds",
                ThreatErrorCode.RATE_LIMIT_EXCEEDED,
                retry_after=wait_seconds,
            )

    def consume(self) -> None:
        """Account for one dispatched upstream request."""
        self._refresh()
        self._remaining = max(0, self._remaining - 1)

    def info(self) -> RateLimitInfo:
        self._refresh()
        return RateLimitInfo(remaining=self._remaining, reset_time=self._reset_time, limit=self.limit)

    def _refresh(self) -> datetime:
        now = self._clock()
        if now > self._reset_time:
            self._remaining = self.limit
            self._reset_time = now + self.window
        return now
