"""Circuit breaker — fails fast while a source is unhealthy.

State machine:
    CLOSED    → (threshold failures)  → OPEN
    OPEN      → (timeout expires)     → HALF_OPEN
    HALF_OPEN → (trial succeeds)      → CLOSED
    HALF_OPEN → (trial fails)         → OPEN

Only one trial request is admitted while HALF_OPEN; the scheduler holds
every other request for the source in its queue until the trial resolves.
"""

from __future__ import annotations

import enum
import time
from typing import Callable

import structlog

logger = structlog.get_logger(__name__)


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Per-source circuit breaker with single-trial half-open probing."""

    def __init__(
        self,
        source: str,
        *,
        failure_threshold: int = 5,
        timeout_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._source = source
        self._threshold = failure_threshold
        self._timeout = timeout_seconds
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: float = 0.0
        self._trial_in_flight = False
        # Set when a half-open trial fails, cleared once the circuit closes
        self._trial_failed = False

    @property
    def state(self) -> CircuitState:
        self._maybe_transition_to_half_open()
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def threshold(self) -> int:
        return self._threshold

    @property
    def trial_in_flight(self) -> bool:
        return self._trial_in_flight

    @property
    def prefers_backup(self) -> bool:
        """True while the circuit is open or a recent half-open trial failed."""
        state = self.state
        if state == CircuitState.OPEN:
            return True
        return state == CircuitState.HALF_OPEN and self._trial_failed

    def retry_after(self) -> float:
        """Seconds until an OPEN circuit admits a trial (0 when not open)."""
        if self.state != CircuitState.OPEN:
            return 0.0
        return max(0.0, self._opened_at + self._timeout - self._clock())

    def can_execute(self) -> bool:
        """Check whether a request may be dispatched right now."""
        state = self.state
        if state == CircuitState.CLOSED:
            return True
        if state == CircuitState.HALF_OPEN:
            return not self._trial_in_flight
        return False

    def begin_trial(self) -> bool:
        """Claim the half-open trial slot. Returns True if this call is the trial."""
        if self.state != CircuitState.HALF_OPEN or self._trial_in_flight:
            return False
        self._trial_in_flight = True
        logger.info("circuit_breaker_trial_started", source=self._source)
        return True

    def release_trial(self) -> None:
        """Give the trial slot back without a health verdict."""
        self._trial_in_flight = False

    def record_success(self) -> None:
        """Record a successful call and reset the failure count."""
        prev = self.state
        self._failure_count = 0
        self._trial_in_flight = False
        if prev == CircuitState.HALF_OPEN:
            self._state = CircuitState.CLOSED
            self._trial_failed = False
            logger.info(
                "circuit_breaker_closed",
                source=self._source,
                previous_state=prev.value,
            )

    def record_failure(self) -> None:
        """Record a failed call; may trip the circuit."""
        prev = self.state
        self._failure_count += 1
        self._trial_in_flight = False

        if prev == CircuitState.HALF_OPEN:
            self._open()
            self._trial_failed = True
            logger.warning(
                "circuit_breaker_reopened",
                source=self._source,
                failures=self._failure_count,
            )
        elif prev == CircuitState.CLOSED and self._failure_count >= self._threshold:
            self._open()
            logger.warning(
                "circuit_breaker_opened",
                source=self._source,
                failures=self._failure_count,
                timeout_s=self._timeout,
            )

    def reset(self) -> None:
        """Force-reset the circuit to CLOSED (admin override)."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._trial_in_flight = False
        self._trial_failed = False
        logger.info("circuit_breaker_force_reset", source=self._source)

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()

    def _maybe_transition_to_half_open(self) -> None:
        if self._state == CircuitState.OPEN:
            elapsed = self._clock() - self._opened_at
            if elapsed >= self._timeout:
                self._state = CircuitState.HALF_OPEN
                self._trial_in_flight = False
                logger.info(
                    "circuit_breaker_half_open",
                    source=self._source,
                    elapsed_s=round(elapsed, 1),
                )
