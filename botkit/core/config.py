"""Runtime configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file
- TESTING=true skips .env loading entirely (used by the test suite)
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Determine which environment to load (default: development)
APP_ENV = os.getenv("APP_ENV", "development")

# Project root (so .env resolution doesn't depend on current working directory)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

# Map environments to their respective .env files (relative to PROJECT_ROOT)
ENV_FILE_MAP = {
    "development": ".env.development",
    "testing": ".env.testing",
    "staging": ".env.staging",
    "production": ".env.production",
}

_env_filename = ENV_FILE_MAP.get(APP_ENV, ".env.development")
_env_path = PROJECT_ROOT / _env_filename

# Only load from file if it exists (production might inject via env vars only)
_env_file = (
    str(_env_path)
    if _env_path.is_file() and os.getenv("TESTING", "").lower() != "true"
    else None
)


# Load .env file early to populate os.environ before creating nested settings
# This is necessary because Pydantic nested BaseSettings don't inherit env_file
if _env_file:
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


def _build_bot_settings() -> "BotSettings":
    """Build bot settings from environment."""

    return BotSettings()


def _build_cache_settings() -> "CacheSettings":
    return CacheSettings()


def _build_rate_limit_settings() -> "RateLimitSettings":
    return RateLimitSettings()


def _build_monitoring_settings() -> "MonitoringSettings":
    return MonitoringSettings()


def _build_log_settings() -> "LogSettings":
    return LogSettings()


class BotSettings(BaseSettings):
    """Bot-wide behaviour."""

    name: str = Field(
        "botkit",
        description="Display name used in logs and plugin context",
    )
    prefix: str = Field(
        "!",
        description="Prefix that marks a chat message as a command",
    )
    owners: str | None = Field(
        None,
        description="Comma-separated list of owner user ids",
    )
    plugins_enabled: bool = Field(
        True,
        description="Discover and load plugins at startup",
    )
    plugins_package: str = Field(
        "botkit.plugins",
        description="Import path of the package scanned for plugins",
    )
    command_timeout_seconds: float = Field(
        30.0,
        description="Upper bound for a single command execution",
        gt=0,
    )

    model_config = SettingsConfigDict(
        env_prefix="BOT_",
        case_sensitive=False,
    )


class CacheSettings(BaseSettings):
    """In-memory cache bounds."""

    max_size: int = Field(
        10000,
        description="Maximum number of cache entries before LRU eviction",
        ge=1,
    )
    default_ttl_seconds: float = Field(
        3600.0,
        description="TTL applied when set() is called without one (0 disables expiry)",
        ge=0,
    )
    cleanup_interval_seconds: float = Field(
        300.0,
        description="Interval of the background sweep for expired entries",
        gt=0,
    )
    max_memory_mb: int = Field(
        200,
        description="Advisory memory ceiling reported in stats (not enforced)",
        ge=1,
    )

    model_config = SettingsConfigDict(
        env_prefix="CACHE_",
        case_sensitive=False,
    )


class RateLimitSettings(BaseSettings):
    """Windows and thresholds for the bot's named rate limiters."""

    enabled: bool = Field(
        True,
        description="Enable per-user rate limiting of commands",
    )
    shared_window_reset: bool = Field(
        True,
        description="Also wipe every key when the limiter-wide window rolls over",
    )
    commands_max_requests: int = Field(
        10,
        description="Commands allowed per user per window",
        ge=1,
    )
    commands_window_seconds: float = Field(
        60.0,
        description="Window size for the 'commands' limiter",
        gt=0,
    )
    messages_max_requests: int = Field(
        30,
        description="Messages processed per user per window",
        ge=1,
    )
    messages_window_seconds: float = Field(
        30.0,
        description="Window size for the 'messages' limiter",
        gt=0,
    )
    api_max_requests: int = Field(
        5,
        description="Outbound API calls per user per window",
        ge=1,
    )
    api_window_seconds: float = Field(
        10.0,
        description="Window size for the 'api' limiter",
        gt=0,
    )

    model_config = SettingsConfigDict(
        env_prefix="RATE_LIMIT_",
        case_sensitive=False,
    )


class MonitoringSettings(BaseSettings):
    """Performance monitor sampling and health thresholds."""

    enabled: bool = Field(
        True,
        description="Run the periodic metrics/health loop",
    )
    health_check_interval_seconds: float = Field(
        30.0,
        description="Interval between metric collection and health checks",
        gt=0,
    )
    metrics_retention_seconds: float = Field(
        3600.0,
        description="How long collected samples are kept",
        gt=0,
    )
    metrics_cleanup_interval_seconds: float = Field(
        600.0,
        description="Interval of the sample retention sweep",
        gt=0,
    )
    auto_recovery: bool = Field(
        True,
        description="Attempt recovery when health becomes critical",
    )
    memory_budget_mb: int = Field(
        512,
        description="Memory budget the RSS is compared against",
        ge=1,
    )
    unhealthy_memory_threshold: float = Field(
        0.75,
        description="Fraction of the memory budget that marks the bot unhealthy",
        gt=0,
        le=1,
    )
    critical_memory_threshold: float = Field(
        0.9,
        description="Fraction of the memory budget that marks the bot critical",
        gt=0,
        le=1,
    )
    critical_latency_ms: float = Field(
        1000.0,
        description="Gateway latency above which the bot is unhealthy",
        gt=0,
    )

    model_config = SettingsConfigDict(
        env_prefix="MONITORING_",
        case_sensitive=False,
    )


class LogSettings(BaseSettings):
    """Logging output configuration."""

    level: str = Field(
        "INFO",
        description="Root log level",
    )
    format: str = Field(
        "json",
        description="'json' for structured logs, 'plain' for human-readable lines",
    )
    output: str = Field(
        "stdout",
        description="'stdout' or 'file'",
    )
    file_path: str | None = Field(
        None,
        description="Log file path when output=file (defaults to logs/bot.log)",
    )
    max_bytes: int = Field(
        5 * 1024 * 1024,
        description="Rotate the log file after this many bytes (0 disables rotation)",
        ge=0,
    )
    backup_count: int = Field(
        5,
        description="Number of rotated log files kept",
        ge=0,
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.
    Raises validation errors on startup if a value is out of range.
    """

    app_env: str = APP_ENV
    bot: BotSettings = Field(default_factory=_build_bot_settings)
    cache: CacheSettings = Field(default_factory=_build_cache_settings)
    rate_limit: RateLimitSettings = Field(default_factory=_build_rate_limit_settings)
    monitoring: MonitoringSettings = Field(default_factory=_build_monitoring_settings)
    log: LogSettings = Field(default_factory=_build_log_settings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


# Global settings instance - composed from domain-specific settings
# Nested settings are created via default_factory so env loading works.
settings = Settings()
