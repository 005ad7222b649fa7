"""Access-coordination framework.

Provides provider selection, daily quota tracking, circuit breaking,
retry classification and priority-ordered request scheduling for
rate-limited upstream sources.
"""

from ratekeeper.providers.types import (
    KnownSource,
    Priority,
    ProviderConfig,
    ProviderState,
    ProviderUtilization,
    SourceConfig,
    SourceLimits,
    SourceStatus,
    WorkerIdentity,
)
from ratekeeper.providers.circuit_breaker import CircuitBreaker, CircuitState
from ratekeeper.providers.coordinator import AccessCoordinator
from ratekeeper.providers.health import ProviderHealthTracker
from ratekeeper.providers.quota import QuotaTracker
from ratekeeper.providers.registry import ProviderRegistry
from ratekeeper.providers.retry import FailureKind, RetryDecision, RetryPolicy
from ratekeeper.providers.selector import ProviderSelector

__all__ = [
    "AccessCoordinator",
    "CircuitBreaker",
    "CircuitState",
    "FailureKind",
    "KnownSource",
    "Priority",
    "ProviderConfig",
    "ProviderHealthTracker",
    "ProviderRegistry",
    "ProviderSelector",
    "ProviderState",
    "ProviderUtilization",
    "QuotaTracker",
    "RetryDecision",
    "RetryPolicy",
    "SourceConfig",
    "SourceLimits",
    "SourceStatus",
    "WorkerIdentity",
]
