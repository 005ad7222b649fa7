"""Coordinator exception hierarchy.

Two families live here:

* ``CoordinatorError``: raised *by* the coordinator to its callers
  (configuration problems, back-pressure, exhausted retries).
* ``ProviderFailure``: raised *by* operations / provider adapters to tell
  the coordinator how a call failed.  The retry policy only understands
  these three classes; anything else is treated as a caller bug.
"""

from __future__ import annotations

from typing import Any


class CoordinatorError(Exception):
    """Base class for all errors surfaced by the coordinator."""

    def __init__(self, message: str, *, code: str = "COORDINATOR_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(message)


# ── Configuration ────────────────────────────────────────────
class ConfigurationError(CoordinatorError):
    """Invalid or incomplete source / provider configuration."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="CONFIGURATION_ERROR")


class UnknownSourceError(CoordinatorError):
    def __init__(self, source: str) -> None:
        self.source = source
        super().__init__(f"Source {source!r} is not registered", code="UNKNOWN_SOURCE")


# ── Dispatch ─────────────────────────────────────────────────
class NoActiveProviderError(CoordinatorError):
    """Every provider backing the source is deactivated."""

    def __init__(self, source: str) -> None:
        self.source = source
        super().__init__(
            f"No active providers available for source {source!r}",
            code="NO_ACTIVE_PROVIDER",
        )


class CircuitOpenError(CoordinatorError):
    def __init__(self, source: str, retry_after_s: float) -> None:
        self.source = source
        self.retry_after_s = retry_after_s
        super().__init__(
            f"Circuit for source {source!r} is open, next attempt in {retry_after_s:.1f}s",
            code="CIRCUIT_OPEN",
        )


class QueueFullError(CoordinatorError):
    def __init__(self, source: str, depth: int) -> None:
        self.source = source
        self.depth = depth
        super().__init__(
            f"Queue for source {source!r} is full ({depth} pending)",
            code="QUEUE_FULL",
        )


class RetryExhaustedError(CoordinatorError):
    """Raised after the last permitted retry failed."""

    def __init__(self, source: str, attempts: int, last_error: BaseException) -> None:
        self.source = source
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Request to {source!r} failed after {attempts} attempts: "
            f"{type(last_error).__name__}: {last_error}",
            code="RETRY_EXHAUSTED",
        )


class CoordinatorClosedError(CoordinatorError):
    def __init__(self, message: str = "Coordinator is closed") -> None:
        super().__init__(message, code="COORDINATOR_CLOSED")


# ── Failures reported by operations ──────────────────────────
class ProviderFailure(Exception):
    """Base for classified failures raised from inside an operation."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class RateLimitedError(ProviderFailure):
    """The provider throttled the request (HTTP 429, JSON-RPC -32005, ...)."""

    def __init__(
        self,
        message: str = "Rate limited by provider",
        *,
        retry_after_s: float | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.retry_after_s = retry_after_s
        super().__init__(message, details=details)


class TransientError(ProviderFailure):
    """Network error, timeout or server-side fault worth retrying."""


class FatalError(ProviderFailure):
    """Malformed request or authorisation failure, never retried."""
