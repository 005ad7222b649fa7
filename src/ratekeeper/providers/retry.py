"""Retry policy: classifies failures and decides requeue vs. surface.

RATE_LIMITED  forced cooldown, circuit failure, provider suspended
TRANSIENT     exponential backoff with jitter, circuit failure
FATAL         surfaced at once, no circuit effect
"""

from __future__ import annotations

import enum
import random
from dataclasses import dataclass

from ratekeeper.exceptions import RateLimitedError, TransientError
from ratekeeper.providers.types import SourceLimits


class FailureKind(str, enum.Enum):
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    FATAL = "fatal"


@dataclass(frozen=True)
class RetryDecision:
    """What the scheduler should do with a failed request."""

    kind: FailureKind
    retry: bool
    delay_s: float = 0.0
    record_circuit_failure: bool = False
    suspend_provider_s: float | None = None


def classify_failure(exc: BaseException) -> FailureKind:
    """Map an exception raised by an operation onto the failure taxonomy.

    Transport-specific errors are translated at the adapter boundary (see
    ``ratekeeper.adapters``).  Anything that arrives here unclassified is a
    caller bug and is treated as fatal.
    """
    if isinstance(exc, RateLimitedError):
        return FailureKind.RATE_LIMITED
    if isinstance(exc, TransientError):
        return FailureKind.TRANSIENT
    # FatalError and unclassified exceptions alike
    return FailureKind.FATAL


class RetryPolicy:
    """Per-source retry decisions."""

    def __init__(
        self,
        *,
        max_retries: int = 3,
        base_backoff_s: float = 1.0,
        max_backoff_s: float = 30.0,
        jitter_s: float = 1.0,
        rate_limit_cooldown_s: float = 30.0,
        provider_cooldown_s: float = 300.0,
        rng: random.Random | None = None,
    ) -> None:
        self.max_retries = max_retries
        self._base = base_backoff_s
        self._max = max_backoff_s
        self._jitter = jitter_s
        self._rate_limit_cooldown = rate_limit_cooldown_s
        self._provider_cooldown = provider_cooldown_s
        self._rng = rng or random.Random()

    @classmethod
    def from_limits(cls, limits: SourceLimits, *, rng: random.Random | None = None) -> RetryPolicy:
        return cls(
            max_retries=limits.max_retries,
            base_backoff_s=limits.base_backoff_s,
            max_backoff_s=limits.max_backoff_s,
            jitter_s=limits.jitter_s,
            rate_limit_cooldown_s=limits.rate_limit_cooldown_s,
            provider_cooldown_s=limits.provider_cooldown_s,
            rng=rng,
        )

    def backoff_delay(self, retry_count: int) -> float:
        """``min(base * 2**retry_count + jitter, max)``."""
        jitter = self._rng.uniform(0.0, self._jitter)
        return min(self._base * (2 ** retry_count) + jitter, self._max)

    def decide(self, exc: BaseException, retry_count: int) -> RetryDecision:
        kind = classify_failure(exc)

        if kind == FailureKind.FATAL:
            return RetryDecision(kind=kind, retry=False)

        can_retry = retry_count < self.max_retries

        if kind == FailureKind.RATE_LIMITED:
            hinted = getattr(exc, "retry_after_s", None) or 0.0
            delay = max(self._rate_limit_cooldown, hinted, self.backoff_delay(retry_count))
            return RetryDecision(
                kind=kind,
                retry=can_retry,
                delay_s=delay,
                record_circuit_failure=True,
                suspend_provider_s=self._provider_cooldown,
            )

        return RetryDecision(
            kind=kind,
            retry=can_retry,
            delay_s=self.backoff_delay(retry_count),
            record_circuit_failure=True,
        )
