"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
aa-stats aggregator, loading and validating environment variables at
startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="Ledger database connection string (PostgreSQL or SQLite)",
    )
    pool_size: int = Field(
        default=5,
        alias="DATABASE_POOL_SIZE",
        ge=1,
        le=100,
        description="Connection pool size (ignored for SQLite)",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL or SQLite connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings (watermark storage)."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="redis://localhost:6379",
        alias="REDIS_URL",
        description="Redis connection string",
    )
    watermark_key_prefix: str = Field(
        default="aa_stats_last_response_id_",
        alias="REDIS_WATERMARK_KEY_PREFIX",
        description="Key prefix for per-period last processed response ids",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate Redis URL format."""
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class AggregationSettings(BaseSettings):
    """Cadences of the periodic aggregation and snapshot tasks."""

    model_config = SettingsConfigDict(env_prefix="AGGREGATION_", extra="ignore")

    hourly_interval_seconds: int = Field(
        default=60,
        alias="AGGREGATION_HOURLY_INTERVAL_SECONDS",
        ge=5,
        le=3600,
        description="How often the hourly stats table is brought up to date",
    )
    daily_interval_seconds: int = Field(
        default=10 * 60 + 30,
        alias="AGGREGATION_DAILY_INTERVAL_SECONDS",
        ge=5,
        le=24 * 3600,
        description="How often the daily stats table is brought up to date",
    )
    daily_initial_delay_seconds: int = Field(
        default=30,
        alias="AGGREGATION_DAILY_INITIAL_DELAY_SECONDS",
        ge=0,
        le=3600,
        description="Offset of the daily task so it does not contend with the hourly one",
    )
    snapshot_interval_seconds: int = Field(
        default=60,
        alias="AGGREGATION_SNAPSHOT_INTERVAL_SECONDS",
        ge=5,
        le=3600,
        description="How often the balance snapshotter checks for a new hour",
    )


class RatesSettings(BaseSettings):
    """Exchange-rate feed settings."""

    model_config = SettingsConfigDict(env_prefix="RATES_", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="RATES_URL",
        description="HTTP endpoint returning a JSON object of '<ASSET>_USD' rates",
    )
    poll_interval_seconds: int = Field(
        default=120,
        alias="RATES_POLL_INTERVAL_SECONDS",
        ge=5,
        le=3600,
        description="Rate feed polling interval",
    )
    base_symbol: str = Field(
        default="GBYTE",
        alias="RATES_BASE_SYMBOL",
        description="Symbol of the base currency in the rate feed",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate rate feed URL format."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("RATES_URL must be an HTTP(S) endpoint")
        return v


class ApiSettings(BaseSettings):
    """Read-only query API settings."""

    model_config = SettingsConfigDict(env_prefix="API_", extra="ignore")

    enabled: bool = Field(
        default=True,
        alias="API_ENABLED",
        description="Serve the query API alongside the aggregator",
    )
    host: str = Field(
        default="0.0.0.0",
        alias="API_HOST",
        description="Bind address of the query API",
    )
    port: int = Field(
        default=8080,
        alias="API_PORT",
        ge=0,
        le=65535,
        description="Port of the query API",
    )
    default_limit: int = Field(
        default=50,
        alias="API_DEFAULT_LIMIT",
        ge=1,
        le=1000,
        description="Row limit of top-N endpoints when the request gives none",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from aa_stats.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.log_level)
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
    aggregation: AggregationSettings = Field(
        default_factory=lambda: AggregationSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    rates: RatesSettings = Field(
        default_factory=lambda: RatesSettings(
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
            "aggregation": {
                "hourly_interval_seconds": str(self.aggregation.hourly_interval_seconds),
                "daily_interval_seconds": str(self.aggregation.daily_interval_seconds),
                "snapshot_interval_seconds": str(self.aggregation.snapshot_interval_seconds),
            },
            "rates": {
                "url": self.rates.url or "(not set)",
                "poll_interval_seconds": str(self.rates.poll_interval_seconds),
                "base_symbol": self.rates.base_symbol,
            },
            "api": {
                "enabled": str(self.api.enabled),
                "port": str(self.api.port),
            },
            "log_level": self.log_level,
        }

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

    Uses LRU cache to ensure settings are loaded only once and
    reused across the application.

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
