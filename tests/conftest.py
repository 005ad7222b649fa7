"""Shared test fixtures."""

from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable

import pytest

from ratekeeper.providers.coordinator import AccessCoordinator
from ratekeeper.providers.types import ProviderConfig, SourceConfig, SourceLimits


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fast_limits() -> SourceLimits:
    """Limits that keep scheduler tests in the millisecond range."""
    return SourceLimits(
        min_delay_s=0.0,
        max_concurrent=1,
        cb_threshold=10,
        cb_timeout_s=60.0,
        max_retries=3,
        base_backoff_s=0.001,
        max_backoff_s=0.005,
        jitter_s=0.001,
        max_queue_depth=100,
        rate_limit_cooldown_s=0.01,
        provider_cooldown_s=60.0,
        connection_failure_threshold=100,
    )


@pytest.fixture
def provider_configs() -> list[ProviderConfig]:
    return [
        ProviderConfig(
            provider_id="infura",
            base_url="https://infura.example/v3/key",
            weight=10,
            daily_limit=100_000,
            rate_limit_buffer=0.1,
            primary=True,
        ),
        ProviderConfig(
            provider_id="public-rpc",
            base_url="https://public.example/rpc",
            weight=5,
            daily_limit=10_000,
            rate_limit_buffer=0.2,
        ),
        ProviderConfig(
            provider_id="ankr",
            base_url="https://ankr.example/rpc",
            weight=3,
            daily_limit=5_000,
            rate_limit_buffer=0.3,
        ),
    ]


@pytest.fixture
def single_provider() -> ProviderConfig:
    return ProviderConfig(
        provider_id="only",
        base_url="https://only.example/rpc",
        daily_limit=1_000_000,
        rate_limit_buffer=0.0,
    )


@pytest.fixture
def make_coordinator(
    fast_limits: SourceLimits, single_provider: ProviderConfig
) -> Callable[..., AccessCoordinator]:
    """Build a one-source ("chain-rpc") coordinator with limit overrides."""

    def _make(
        *,
        providers: list[ProviderConfig] | None = None,
        name: str = "chain-rpc",
        **overrides: Any,
    ) -> AccessCoordinator:
        coordinator_kwargs = {
            key: overrides.pop(key)
            for key in ("worker", "base_stagger_seconds", "clock", "retry_policies")
            if key in overrides
        }
        source = SourceConfig(
            name=name,
            providers=tuple(providers or [single_provider]),
            limits=replace(fast_limits, **overrides),
        )
        return AccessCoordinator([source], **coordinator_kwargs)

    return _make
