"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
Paperhands Tracker application, loading and validating environment
variables at startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL connection string (sqlite+aiosqlite is accepted for local runs)",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL (or sqlite+aiosqlite) connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="redis://localhost:6379",
        alias="REDIS_URL",
        description="Redis connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate Redis URL format."""
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class SolanaSettings(BaseSettings):
    """Solana ledger access (Helius enhanced API and JSON-RPC)."""

    model_config = SettingsConfigDict(env_prefix="SOLANA_", extra="ignore")

    rpc_url: str = Field(
        default="https://api.mainnet-beta.solana.com",
        alias="SOLANA_RPC_URL",
        description="Solana JSON-RPC endpoint (used by the RPC history fallback)",
    )
    helius_api_key: SecretStr | None = Field(
        default=None,
        alias="HELIUS_API_KEY",
        description="Helius API key for the enhanced transactions API",
    )
    helius_api_base: str = Field(
        default="https://api.helius.xyz",
        alias="HELIUS_API_BASE",
        description="Helius enhanced API base URL",
    )
    history_source: Literal["auto", "merged", "enhanced", "rpc"] = Field(
        default="auto",
        alias="SOLANA_HISTORY_SOURCE",
        description=(
            "Where history is read from: merged (enhanced API plus JSON-RPC), enhanced, rpc, "
            "or auto (merged when HELIUS_API_KEY is set, rpc otherwise)"
        ),
    )
    max_retries: int = Field(
        default=5,
        alias="SOLANA_MAX_RETRIES",
        ge=1,
        le=20,
        description="Attempts per upstream call before the extraction fails",
    )
    retry_base_delay_seconds: float = Field(
        default=1.2,
        alias="SOLANA_RETRY_BASE_DELAY_SECONDS",
        ge=0.0,
        le=60.0,
        description="Base backoff delay (doubles on each retry)",
    )
    page_limit: int = Field(
        default=100,
        alias="SOLANA_PAGE_LIMIT",
        ge=1,
        le=1000,
        description="Transactions requested per history page",
    )
    max_pages: int = Field(
        default=50,
        alias="SOLANA_MAX_PAGES",
        ge=1,
        le=10_000,
        description="Hard bound on history pages fetched per analysis",
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        alias="SOLANA_REQUEST_TIMEOUT_SECONDS",
        ge=1.0,
        le=600.0,
        description="HTTP timeout per upstream request",
    )

    @field_validator("rpc_url", "helius_api_base")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate endpoint URL format."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("Solana endpoints must be HTTP(S) URLs")
        return v.rstrip("/")

    @property
    def resolved_history_source(self) -> Literal["merged", "enhanced", "rpc"]:
        if self.history_source == "auto":
            return "merged" if self.helius_api_key else "rpc"
        return self.history_source


class MarketDataSettings(BaseSettings):
    """Token price / metadata provider settings."""

    model_config = SettingsConfigDict(env_prefix="MARKET_DATA_", extra="ignore")

    dexscreener_base_url: str = Field(
        default="https://api.dexscreener.com",
        alias="MARKET_DATA_DEXSCREENER_BASE_URL",
        description="DexScreener API base URL",
    )
    batch_size: int = Field(
        default=30,
        alias="MARKET_DATA_BATCH_SIZE",
        ge=1,
        le=30,
        description="Mints per batched lookup (DexScreener accepts at most 30)",
    )
    price_freshness_seconds: int = Field(
        default=300,
        alias="MARKET_DATA_PRICE_FRESHNESS_SECONDS",
        ge=0,
        le=24 * 3600,
        description="How long a cached quote is served without a network call",
    )
    metadata_ttl_seconds: int = Field(
        default=24 * 3600,
        alias="MARKET_DATA_METADATA_TTL_SECONDS",
        ge=60,
        le=30 * 24 * 3600,
        description="Redis TTL for token symbol/name metadata",
    )
    batch_delay_seconds: float = Field(
        default=0.3,
        alias="MARKET_DATA_BATCH_DELAY_SECONDS",
        ge=0.0,
        le=10.0,
        description="Pause between consecutive batch requests",
    )


class AnalysisSettings(BaseSettings):
    """Regret engine and aggregation settings."""

    model_config = SettingsConfigDict(env_prefix="ANALYSIS_", extra="ignore")

    materiality_threshold_usd: float = Field(
        default=100.0,
        alias="ANALYSIS_MATERIALITY_THRESHOLD_USD",
        ge=0.0,
        description="Minimum regret (or realized loss) in USD for an event to be reported",
    )
    default_lookback_days: int = Field(
        default=30,
        alias="ANALYSIS_DEFAULT_LOOKBACK_DAYS",
        ge=1,
        le=365,
        description="Lookback window used when a request does not specify one",
    )
    max_lookback_days: int = Field(
        default=365,
        alias="ANALYSIS_MAX_LOOKBACK_DAYS",
        ge=1,
        le=3650,
        description="Upper bound accepted for a requested lookback window",
    )
    top_n_tokens: int = Field(
        default=10,
        alias="ANALYSIS_TOP_N_TOKENS",
        ge=1,
        le=100,
        description="Number of most-regretted tokens kept in a result",
    )


class SchedulerSettings(BaseSettings):
    """Admission control and job lifecycle settings."""

    model_config = SettingsConfigDict(env_prefix="SCHEDULER_", extra="ignore")

    max_concurrent: int = Field(
        default=5,
        alias="SCHEDULER_MAX_CONCURRENT",
        ge=1,
        le=1000,
        description="Hard ceiling on analyses in processing at once",
    )
    result_ttl_hours: int = Field(
        default=48,
        alias="SCHEDULER_RESULT_TTL_HOURS",
        ge=1,
        le=24 * 30,
        description="How long a finished analysis is served from the cache",
    )
    cooldown_enabled: bool = Field(
        default=True,
        alias="SCHEDULER_COOLDOWN_ENABLED",
        description="Reject re-analysis of an address that completed recently",
    )
    cooldown_minutes: int = Field(
        default=15,
        alias="SCHEDULER_COOLDOWN_MINUTES",
        ge=0,
        le=24 * 60,
        description="Cooldown window after a completed analysis",
    )
    max_pipeline_minutes: int = Field(
        default=10,
        alias="SCHEDULER_MAX_PIPELINE_MINUTES",
        ge=1,
        le=24 * 60,
        description="Processing jobs older than this are considered lost and failed",
    )
    drain_interval_seconds: float = Field(
        default=15.0,
        alias="SCHEDULER_DRAIN_INTERVAL_SECONDS",
        ge=0.5,
        le=3600.0,
        description="Period of the background drain / stale-reclaim tick",
    )
    store_retry_attempts: int = Field(
        default=3,
        alias="SCHEDULER_STORE_RETRY_ATTEMPTS",
        ge=1,
        le=10,
        description="Attempts for terminal job writes before giving up",
    )


class ApiSettings(BaseSettings):
    """HTTP API settings."""

    model_config = SettingsConfigDict(env_prefix="API_", extra="ignore")

    host: str = Field(
        default="0.0.0.0",
        alias="API_HOST",
        description="Bind address for the HTTP API",
    )
    port: int = Field(
        default=8080,
        alias="API_PORT",
        ge=1,
        le=65535,
        description="HTTP port for the API",
    )
    leaderboard_limit: int = Field(
        default=50,
        alias="API_LEADERBOARD_LIMIT",
        ge=1,
        le=500,
        description="Maximum rows returned by the wallet-analyses listing",
    )


class Settings(BaseSettings):
    """Root application settings.

    Example:
        ```python
        from paperhands_tracker.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.scheduler.max_concurrent)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    solana: SolanaSettings = Field(
        default_factory=lambda: SolanaSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    market_data: MarketDataSettings = Field(
        default_factory=lambda: MarketDataSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    analysis: AnalysisSettings = Field(
        default_factory=lambda: AnalysisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    scheduler: SchedulerSettings = Field(
        default_factory=lambda: SchedulerSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    api: ApiSettings = Field(
        default_factory=lambda: ApiSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url),
            "solana": {
                "rpc_url": self.solana.rpc_url,
                "helius_api_base": self.solana.helius_api_base,
                "helius_api_key": "(set)" if self.solana.helius_api_key else "(not set)",
                "history_source": self.solana.resolved_history_source,
            },
            "market_data": {
                "dexscreener_base_url": self.market_data.dexscreener_base_url,
                "price_freshness_seconds": str(self.market_data.price_freshness_seconds),
            },
            "analysis": {
                "materiality_threshold_usd": str(self.analysis.materiality_threshold_usd),
                "default_lookback_days": str(self.analysis.default_lookback_days),
            },
            "scheduler": {
                "max_concurrent": str(self.scheduler.max_concurrent),
                "result_ttl_hours": str(self.scheduler.result_ttl_hours),
                "cooldown_minutes": (
                    str(self.scheduler.cooldown_minutes) if self.scheduler.cooldown_enabled else "(disabled)"
                ),
            },
            "api_port": str(self.api.port),
            "log_level": self.log_level,
        }

    def validate_requirements(self, *, command: Literal["serve", "worker", "analyze", "init-db"]) -> None:
        """Validate command-specific requirements.

        Commands that read ledger history refuse to start without a usable
        history source.
        """
        if command in ("serve", "worker", "analyze") and self.solana.resolved_history_source != "rpc":
            if not self.solana.helius_api_key:
                raise ValueError(
                    f"HELIUS_API_KEY is required when SOLANA_HISTORY_SOURCE is {self.solana.history_source}"
                )

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
