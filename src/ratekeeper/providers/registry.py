"""Provider registry: static configuration and live state per source."""

from __future__ import annotations

from typing import Iterator

import structlog

from ratekeeper.exceptions import ConfigurationError, UnknownSourceError
from ratekeeper.providers.types import ProviderConfig, ProviderState, SourceConfig

logger = structlog.get_logger(__name__)


class ProviderRegistry:
    """Holds every provider able to serve each registered source."""

    def __init__(self) -> None:
        self._sources: dict[str, SourceConfig] = {}
        self._providers: dict[str, list[ProviderState]] = {}

    @classmethod
    def from_sources(cls, sources: list[SourceConfig]) -> ProviderRegistry:
        registry = cls()
        for source in sources:
            registry.add_source(source)
        return registry

    def add_source(self, source: SourceConfig) -> None:
        if source.name in self._sources:
            raise ConfigurationError(f"Source {source.name!r} registered twice")
        self._sources[source.name] = source
        self._providers[source.name] = []
        for provider in source.providers:
            self.register(provider, source.name)

    def register(self, provider: ProviderConfig, source: str) -> ProviderState:
        if source not in self._providers:
            raise UnknownSourceError(source)
        existing = self._providers[source]
        if any(p.provider_id == provider.provider_id for p in existing):
            raise ConfigurationError(
                f"Provider {provider.provider_id!r} registered twice for source {source!r}"
            )
        if provider.daily_limit <= 0:
            raise ConfigurationError(
                f"Provider {provider.provider_id!r} must have a positive daily_limit"
            )
        state = ProviderState(config=provider, source=source)
        existing.append(state)
        logger.debug(
            "provider_registered",
            source=source,
            provider=provider.provider_id,
            daily_limit=provider.daily_limit,
            primary=provider.primary,
        )
        return state

    def validate(self) -> None:
        """Fail fast on any source that has nothing to dispatch to."""
        empty = [name for name, providers in self._providers.items() if not providers]
        if empty:
            raise ConfigurationError(
                f"Sources registered without providers: {', '.join(sorted(empty))}"
            )

    # ── Lookup ───────────────────────────────────────────────
    def source(self, name: str) -> SourceConfig:
        try:
            return self._sources[name]
        except KeyError:
            raise UnknownSourceError(name) from None

    def providers(self, source: str) -> list[ProviderState]:
        try:
            return self._providers[source]
        except KeyError:
            raise UnknownSourceError(source) from None

    def provider(self, source: str, provider_id: str) -> ProviderState | None:
        return next(
            (p for p in self.providers(source) if p.provider_id == provider_id), None
        )

    @property
    def source_names(self) -> list[str]:
        return list(self._sources)

    def __iter__(self) -> Iterator[SourceConfig]:
        return iter(self._sources.values())

    def __contains__(self, name: object) -> bool:
        return name in self._sources
