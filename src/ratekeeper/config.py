"""Coordinator configuration."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ratekeeper.providers.types import KnownSource, ProviderConfig, SourceConfig, SourceLimits

# Primary (Infura), public and Ankr JSON-RPC endpoints per network
NETWORK_RPC_URLS: dict[str, tuple[str, str, str]] = {
    "avalanche": (
        "https://avalanche-mainnet.infura.io/v3/{key}",
        "https://api.avax.network/ext/bc/C/rpc",
        "https://rpc.ankr.com/avalanche",
    ),
    "avalanche-testnet": (
        "https://avalanche-fuji.infura.io/v3/{key}",
        "https://api.avax-test.network/ext/bc/C/rpc",
        "https://rpc.ankr.com/avalanche_fuji",
    ),
    "base": (
        "https://base-mainnet.infura.io/v3/{key}",
        "https://mainnet.base.org",
        "https://rpc.ankr.com/base",
    ),
    "base-testnet": (
        "https://base-sepolia.infura.io/v3/{key}",
        "https://sepolia.base.org",
        "https://rpc.ankr.com/base_sepolia",
    ),
}

NETWORK_CHAIN_IDS: dict[str, int] = {
    "avalanche": 43114,
    "avalanche-testnet": 43113,
    "base": 8453,
    "base-testnet": 84532,
}

NETWORK_EXPLORER_URLS: dict[str, str] = {
    "avalanche": "https://api.snowtrace.io/api",
    "avalanche-testnet": "https://api-testnet.snowtrace.io/api",
    "base": "https://api.basescan.org/api",
    "base-testnet": "https://api-sepolia.basescan.org/api",
}


class ProviderSettings(BaseModel):
    """One endpoint able to serve a source."""

    model_config = ConfigDict(extra="forbid")

    provider_id: str = Field(min_length=1)
    base_url: str = Field(min_length=1)
    weight: int = Field(default=1, ge=0)
    daily_limit: int = Field(gt=0)
    rate_limit_buffer: float = Field(default=0.1, ge=0.0, lt=1.0)
    primary: bool = False
    enabled: bool = True
    metadata: dict[str, Any] = Field(default_factory=dict)

    def to_config(self) -> ProviderConfig:
        return ProviderConfig(
            provider_id=self.provider_id,
            base_url=self.base_url,
            weight=self.weight,
            daily_limit=self.daily_limit,
            rate_limit_buffer=self.rate_limit_buffer,
            primary=self.primary,
            enabled=self.enabled,
            metadata=dict(self.metadata),
        )


class SourceSettings(BaseModel):
    """Scheduling and resilience settings for one source (durations in ms)."""

    model_config = ConfigDict(extra="forbid")

    min_delay_ms: int = Field(ge=0)
    max_concurrent: int = Field(ge=1)
    cb_threshold: int = Field(default=5, ge=1)
    cb_timeout_ms: int = Field(default=60_000, ge=0)
    max_retries: int = Field(default=3, ge=0)
    base_backoff_ms: int = Field(default=1_000, ge=0)
    max_backoff_ms: int = Field(default=30_000, ge=0)
    jitter_ms: int = Field(default=1_000, gt=0)
    max_queue_depth: int = Field(default=100, ge=1)
    rate_limit_cooldown_ms: int = Field(default=30_000, ge=0)
    provider_cooldown_ms: int = Field(default=300_000, ge=0)
    connection_failure_threshold: int = Field(default=3, ge=1)
    providers: list[ProviderSettings] = Field(min_length=1)

    @model_validator(mode="after")
    def _check_bounds(self) -> SourceSettings:
        if self.max_backoff_ms < self.base_backoff_ms:
            raise ValueError("max_backoff_ms must be >= base_backoff_ms")
        # One request's own retries must not be able to open the circuit
        if self.cb_threshold <= self.max_retries:
            raise ValueError("cb_threshold must be greater than max_retries")
        ids = [p.provider_id for p in self.providers]
        if len(ids) != len(set(ids)):
            raise ValueError(f"duplicate provider ids: {ids}")
        return self

    def to_limits(self) -> SourceLimits:
        return SourceLimits(
            min_delay_s=self.min_delay_ms / 1000,
            max_concurrent=self.max_concurrent,
            cb_threshold=self.cb_threshold,
            cb_timeout_s=self.cb_timeout_ms / 1000,
            max_retries=self.max_retries,
            base_backoff_s=self.base_backoff_ms / 1000,
            max_backoff_s=self.max_backoff_ms / 1000,
            jitter_s=self.jitter_ms / 1000,
            max_queue_depth=self.max_queue_depth,
            rate_limit_cooldown_s=self.rate_limit_cooldown_ms / 1000,
            provider_cooldown_s=self.provider_cooldown_ms / 1000,
            connection_failure_threshold=self.connection_failure_threshold,
        )

    def to_source(self, name: str) -> SourceConfig:
        return SourceConfig(
            name=name,
            providers=tuple(p.to_config() for p in self.providers),
            limits=self.to_limits(),
        )


class Settings(BaseSettings):
    """Centralised, validated configuration loaded from environment / .env file."""

    model_config = SettingsConfigDict(
        env_prefix="RATEKEEPER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Process ──────────────────────────────────────────────
    log_level: str = "INFO"
    json_logs: bool = False
    worker_id: int = Field(default=1, ge=1)
    base_stagger_ms: int = Field(default=5_000, ge=0)
    rollover_check_interval_s: float = Field(default=3_600.0, gt=0)

    # ── Upstreams ────────────────────────────────────────────
    network: str = "avalanche"
    infura_api_key: str = ""

    # Explicit sources (JSON in env); empty = default_sources()
    sources: dict[str, SourceSettings] = Field(default_factory=dict)

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, v: str) -> str:
        return v.upper()

    @field_validator("network")
    @classmethod
    def _known_network(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in NETWORK_RPC_URLS:
            raise ValueError(
                f"network must be one of {', '.join(sorted(NETWORK_RPC_URLS))}"
            )
        return v


def default_sources(*, network: str = "avalanche", infura_api_key: str = "") -> dict[str, SourceSettings]:
    """Built-in chain-rpc, price-feed and block-explorer sources."""
    infura_url, public_url, ankr_url = NETWORK_RPC_URLS[network]
    chain_meta = {"chain_id": NETWORK_CHAIN_IDS[network], "network": network}
    # Infura keys are 32 hex chars; anything shorter cannot authenticate
    has_infura = len(infura_api_key.strip()) >= 32

    return {
        KnownSource.CHAIN_RPC.value: SourceSettings(
            min_delay_ms=5_000,
            max_concurrent=1,
            cb_threshold=5,
            cb_timeout_ms=60_000,
            providers=[
                ProviderSettings(
                    provider_id="infura",
                    base_url=infura_url.format(key=infura_api_key.strip()),
                    weight=10,
                    daily_limit=100_000,
                    rate_limit_buffer=0.1,
                    primary=True,
                    enabled=has_infura,
                    metadata=chain_meta,
                ),
                ProviderSettings(
                    provider_id="public-rpc",
                    base_url=public_url,
                    weight=5,
                    daily_limit=10_000,
                    rate_limit_buffer=0.2,
                    metadata=chain_meta,
                ),
                ProviderSettings(
                    provider_id="ankr",
                    base_url=ankr_url,
                    weight=3,
                    daily_limit=5_000,
                    rate_limit_buffer=0.3,
                    metadata=chain_meta,
                ),
            ],
        ),
        KnownSource.PRICE_FEED.value: SourceSettings(
            min_delay_ms=3_000,
            max_concurrent=2,
            cb_threshold=5,
            cb_timeout_ms=60_000,
            providers=[
                ProviderSettings(
                    provider_id="coingecko",
                    base_url="https://api.coingecko.com/api/v3",
                    weight=5,
                    daily_limit=10_000,
                    primary=True,
                ),
                ProviderSettings(
                    provider_id="cryptocompare",
                    base_url="https://min-api.cryptocompare.com/data",
                    weight=3,
                    daily_limit=10_000,
                ),
                ProviderSettings(
                    provider_id="binance",
                    base_url="https://api.binance.com/api/v3",
                    weight=2,
                    daily_limit=50_000,
                ),
            ],
        ),
        KnownSource.BLOCK_EXPLORER.value: SourceSettings(
            min_delay_ms=5_000,
            max_concurrent=1,
            cb_threshold=5,
            cb_timeout_ms=60_000,
            providers=[
                ProviderSettings(
                    provider_id="explorer",
                    base_url=NETWORK_EXPLORER_URLS[network],
                    weight=1,
                    daily_limit=100_000,
                    metadata=chain_meta,
                ),
            ],
        ),
    }


def build_sources(settings: Settings) -> list[SourceConfig]:
    """Convert validated settings into typed source descriptors."""
    sources = settings.sources or default_sources(
        network=settings.network, infura_api_key=settings.infura_api_key
    )
    return [cfg.to_source(name) for name, cfg in sources.items()]


def get_settings(**overrides: Any) -> Settings:
    """Factory that allows test-time overrides."""
    return Settings(**overrides)
