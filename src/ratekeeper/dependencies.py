"""Wiring: builds the one coordinator a process shares between its workers.

Callers construct the coordinator once at startup and pass it by
reference to every worker; nothing here caches a module-level instance.
"""

from __future__ import annotations

from ratekeeper.config import Settings, build_sources, get_settings
from ratekeeper.observability import configure_logging
from ratekeeper.providers.coordinator import AccessCoordinator
from ratekeeper.providers.types import WorkerIdentity


def build_coordinator(settings: Settings | None = None) -> AccessCoordinator:
    """Create a coordinator from settings (raises ``ConfigurationError`` on bad sources)."""
    settings = settings or get_settings()
    return AccessCoordinator(
        build_sources(settings),
        worker=WorkerIdentity(settings.worker_id),
        base_stagger_seconds=settings.base_stagger_ms / 1000,
        rollover_interval_seconds=settings.rollover_check_interval_s,
    )


def bootstrap(settings: Settings | None = None) -> AccessCoordinator:
    """Configure logging and build the coordinator for a process entry point."""
    settings = settings or get_settings()
    configure_logging(log_level=settings.log_level, json_logs=settings.json_logs)
    return build_coordinator(settings)
