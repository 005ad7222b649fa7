"""Picks the least-utilised active provider for a source.

Filters out disabled, quota-exhausted and suspended providers, steers
away from primary endpoints while the source circuit is degraded, then
balances on ``request_count / daily_limit``.  Static ``weight`` only
breaks utilisation ties.
"""

from __future__ import annotations

import structlog

from ratekeeper.exceptions import NoActiveProviderError
from ratekeeper.providers.circuit_breaker import CircuitBreaker
from ratekeeper.providers.quota import QuotaTracker
from ratekeeper.providers.registry import ProviderRegistry
from ratekeeper.providers.types import ProviderState

logger = structlog.get_logger(__name__)


class ProviderSelector:
    """Chooses the provider a dispatch is bound to."""

    def __init__(
        self,
        registry: ProviderRegistry,
        quota: QuotaTracker,
        circuit_breakers: dict[str, CircuitBreaker],
    ) -> None:
        self._registry = registry
        self._quota = quota
        self._circuits = circuit_breakers

    def select_provider(self, source: str) -> ProviderState:
        """Return the best active provider, or raise ``NoActiveProviderError``."""
        providers = self._registry.providers(source)
        candidates = [p for p in providers if self._quota.refresh(p)]

        if not candidates:
            logger.warning(
                "no_active_providers",
                source=source,
                total_configured=len(providers),
            )
            raise NoActiveProviderError(source)

        cb = self._circuits.get(source)
        if cb is not None and cb.prefers_backup:
            backups = [p for p in candidates if not p.config.primary]
            if backups:
                logger.debug(
                    "provider_backup_preferred",
                    source=source,
                    circuit_state=cb.state.value,
                )
                candidates = backups

        # min() keeps the first of equal keys, so registration order is the final tiebreak
        return min(candidates, key=lambda p: (p.utilization, -p.config.weight))
