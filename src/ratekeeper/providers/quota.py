"""Quota tracker — daily request budgets and cooldown suspensions per provider.

Two independent ways to take a provider out of rotation:

* quota: ``request_count`` crossed ``daily_limit * (1 - buffer)``; cleared
  by the 24h rollover.
* suspension: rate-limit response or repeated connection failures; cleared
  lazily once the cooldown has elapsed, untouched by the rollover.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable

import structlog

from ratekeeper.observability.metrics import PROVIDER_DEACTIVATIONS, PROVIDER_UTILIZATION
from ratekeeper.providers.registry import ProviderRegistry
from ratekeeper.providers.types import ProviderState

logger = structlog.get_logger(__name__)

DAY_SECONDS = 24 * 60 * 60


class QuotaTracker:
    """Counts dispatches per provider against a rolling daily limit."""

    def __init__(
        self,
        registry: ProviderRegistry,
        *,
        period_seconds: float = DAY_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._registry = registry
        self._period = period_seconds
        self._clock = clock
        now = clock()
        self._last_reset: dict[str, float] = {name: now for name in registry.source_names}

    def increment(self, provider: ProviderState) -> None:
        """Record one dispatch; deactivates the provider at its buffer ceiling."""
        provider.request_count += 1
        PROVIDER_UTILIZATION.labels(
            source=provider.source, provider=provider.provider_id
        ).set(provider.utilization)

        if not provider.quota_exhausted and provider.request_count >= provider.config.quota_ceiling:
            provider.quota_exhausted = True
            PROVIDER_DEACTIVATIONS.labels(
                source=provider.source, provider=provider.provider_id, reason="quota"
            ).inc()
            logger.warning(
                "provider_quota_exhausted",
                source=provider.source,
                provider=provider.provider_id,
                request_count=provider.request_count,
                daily_limit=provider.config.daily_limit,
                buffer=provider.config.rate_limit_buffer,
            )

    def suspend(self, provider: ProviderState, seconds: float, *, reason: str) -> None:
        """Take a provider out of rotation until the cooldown elapses."""
        until = self._clock() + seconds
        if provider.suspended_until is not None and provider.suspended_until >= until:
            return
        provider.suspended_until = until
        PROVIDER_DEACTIVATIONS.labels(
            source=provider.source, provider=provider.provider_id, reason=reason
        ).inc()
        logger.warning(
            "provider_suspended",
            source=provider.source,
            provider=provider.provider_id,
            reason=reason,
            cooldown_s=seconds,
        )

    def refresh(self, provider: ProviderState) -> bool:
        """Lift an elapsed suspension and report whether the provider is active."""
        now = self._clock()
        if provider.suspended_until is not None and now >= provider.suspended_until:
            provider.suspended_until = None
            provider.consecutive_failures = 0
            logger.info(
                "provider_reactivated",
                source=provider.source,
                provider=provider.provider_id,
            )
        return provider.is_active(now)

    def suspended_for(self, provider: ProviderState) -> float:
        if provider.suspended_until is None:
            return 0.0
        return max(0.0, provider.suspended_until - self._clock())

    # ── Rollover ─────────────────────────────────────────────
    def check_rollover(self) -> list[str]:
        """Reset every source whose period has elapsed. Returns the reset sources."""
        now = self._clock()
        rolled: list[str] = []
        for source, last_reset in self._last_reset.items():
            if now - last_reset >= self._period:
                self.reset_source(source)
                self._last_reset[source] = now
                rolled.append(source)
        return rolled

    def reset_source(self, source: str) -> None:
        """Restore every provider of ``source`` to a fresh daily budget."""
        for provider in self._registry.providers(source):
            provider.request_count = 0
            provider.quota_exhausted = False
            PROVIDER_UTILIZATION.labels(source=source, provider=provider.provider_id).set(0.0)
        logger.info("provider_quota_reset", source=source)

    async def run_periodic(self, interval_seconds: float = 3600.0) -> None:
        """Check for rollover on a fixed interval until cancelled."""
        while True:
            await asyncio.sleep(interval_seconds)
            rolled = self.check_rollover()
            if rolled:
                logger.info("daily_rollover_completed", sources=rolled)
