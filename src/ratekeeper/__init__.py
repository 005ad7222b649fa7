"""Shared access coordination for rate-limited upstream services."""

from ratekeeper.exceptions import (
    CircuitOpenError,
    ConfigurationError,
    CoordinatorClosedError,
    CoordinatorError,
    FatalError,
    NoActiveProviderError,
    ProviderFailure,
    QueueFullError,
    RateLimitedError,
    RetryExhaustedError,
    TransientError,
    UnknownSourceError,
)
from ratekeeper.providers import (
    AccessCoordinator,
    KnownSource,
    Priority,
    ProviderConfig,
    SourceConfig,
    SourceLimits,
    WorkerIdentity,
)

__version__ = "0.1.0"

__all__ = [
    "AccessCoordinator",
    "CircuitOpenError",
    "ConfigurationError",
    "CoordinatorClosedError",
    "CoordinatorError",
    "FatalError",
    "KnownSource",
    "NoActiveProviderError",
    "Priority",
    "ProviderConfig",
    "ProviderFailure",
    "QueueFullError",
    "RateLimitedError",
    "RetryExhaustedError",
    "SourceConfig",
    "SourceLimits",
    "TransientError",
    "UnknownSourceError",
    "WorkerIdentity",
]
