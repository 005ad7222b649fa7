"""Core types for the access-coordination layer."""

from __future__ import annotations

import asyncio
import enum
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable


class KnownSource(str, enum.Enum):
    """Well-known logical capabilities shipped with the default configuration."""

    CHAIN_RPC = "chain-rpc"
    PRICE_FEED = "price-feed"
    BLOCK_EXPLORER = "block-explorer"


class Priority(str, enum.Enum):
    HIGH = "high"
    NORMAL = "normal"

    @classmethod
    def _missing_(cls, value: object) -> Priority | None:
        # "High" / "NORMAL" map onto the lowercase values
        if isinstance(value, str):
            return cls.__members__.get(value.strip().upper())
        return None


@dataclass(frozen=True)
class ProviderConfig:
    """Static configuration for a single provider endpoint.

    Attributes:
        provider_id:        Unique identifier within its source (e.g. "infura").
        base_url:           Endpoint the operation talks to.
        weight:             Static preference, only consulted when utilisation ties.
        daily_limit:        Requests allowed per rolling day.
        rate_limit_buffer:  Fraction of ``daily_limit`` held back as headroom.
        primary:            Primary endpoints are avoided while the circuit is degraded.
        enabled:            Disabled providers are never selected (e.g. missing API key).
        metadata:           Arbitrary extra config (headers, chain id, ...).
    """

    provider_id: str
    base_url: str
    weight: int = 1
    daily_limit: int = 10_000
    rate_limit_buffer: float = 0.1
    primary: bool = False
    enabled: bool = True
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def quota_ceiling(self) -> float:
        """Request count at which the provider is taken out of rotation."""
        return self.daily_limit * (1.0 - self.rate_limit_buffer)


@dataclass
class ProviderState:
    """Live, mutable counters for one provider."""

    config: ProviderConfig
    source: str
    request_count: int = 0
    quota_exhausted: bool = False
    suspended_until: float | None = None
    consecutive_failures: int = 0

    @property
    def provider_id(self) -> str:
        return self.config.provider_id

    @property
    def utilization(self) -> float:
        if self.config.daily_limit <= 0:
            return 1.0
        return self.request_count / self.config.daily_limit

    def is_active(self, now: float) -> bool:
        if not self.config.enabled or self.quota_exhausted:
            return False
        return self.suspended_until is None or now >= self.suspended_until


@dataclass(frozen=True)
class SourceLimits:
    """Fully specified per-source scheduling and resilience settings.

    Durations are stored in seconds; ``config.SourceSettings`` accepts
    milliseconds and converts.
    """

    min_delay_s: float = 1.0
    max_concurrent: int = 1
    cb_threshold: int = 5
    cb_timeout_s: float = 60.0
    max_retries: int = 3
    base_backoff_s: float = 1.0
    max_backoff_s: float = 30.0
    jitter_s: float = 1.0
    max_queue_depth: int = 100
    rate_limit_cooldown_s: float = 30.0
    provider_cooldown_s: float = 300.0
    connection_failure_threshold: int = 3


@dataclass(frozen=True)
class SourceConfig:
    """Typed descriptor of a source and the providers backing it."""

    name: str
    providers: tuple[ProviderConfig, ...]
    limits: SourceLimits = field(default_factory=SourceLimits)


@dataclass(frozen=True)
class WorkerIdentity:
    """A cooperating bot sharing the coordinator."""

    worker_id: int

    def stagger_offset(self, base_stagger_s: float) -> float:
        return max(0, self.worker_id - 1) * base_stagger_s


Operation = Callable[[ProviderConfig], Awaitable[Any]]


@dataclass(eq=False)
class QueuedRequest:
    """One caller request waiting for (or between) dispatch attempts."""

    operation: Operation
    priority: Priority
    future: asyncio.Future[Any]
    max_retries: int
    enqueued_at: float = field(default_factory=time.monotonic)
    retry_count: int = 0
    last_error: BaseException | None = None

    @property
    def attempts(self) -> int:
        return self.retry_count + 1


@dataclass
class ProviderUtilization:
    """Read-only snapshot of a provider's quota and health."""

    provider_id: str
    request_count: int
    daily_limit: int
    utilization: float
    is_active: bool
    quota_exhausted: bool
    suspended_for_s: float = 0.0
    success_rate: float = 1.0
    latency_p50_ms: float = 0.0
    latency_p95_ms: float = 0.0
    last_error: str | None = None


@dataclass
class SourceStatus:
    """Read-only snapshot of one source, for monitoring collaborators."""

    source: str
    queue_length: int
    active_requests: int
    circuit_state: str
    failure_count: int
    providers: list[ProviderUtilization] = field(default_factory=list)
