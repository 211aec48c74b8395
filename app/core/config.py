"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file

Limiter options also accept the unprefixed variable names used by existing
deployments (RATE_LIMIT, REFILL_RATE, TTL_SECONDS, SUCCESS_URL).
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, Field
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

# Select the .env file for the current environment
_env_filename = ENV_FILE_MAP.get(APP_ENV, ".env.development")
_env_path = PROJECT_ROOT / _env_filename

# Only load from file if it exists (production might inject via env vars only)
_env_file = str(_env_path) if _env_path.is_file() else None


# Load .env file early to populate os.environ before creating nested settings
# This is necessary because Pydantic nested BaseSettings don't inherit env_file
if _env_file and os.getenv("TESTING") != "true":
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


def _build_redis_settings() -> "RedisSettings":
    """Build Redis settings from environment.

    Pydantic Settings (v2) can populate values from environment variables.
    However, static type checkers often treat required fields as required
    constructor arguments, which is not how BaseSettings is intended to be used.
    """

    return RedisSettings()  # type: ignore[call-arg]


def _build_limiter_settings() -> "LimiterSettings":
    """Build limiter settings from environment.

    See _build_redis_settings() for rationale about the type ignore.
    """

    return LimiterSettings()  # type: ignore[call-arg]


def _build_app_settings() -> "AppSettings":
    return AppSettings()  # type: ignore[call-arg]


def _build_log_settings() -> "LogSettings":
    return LogSettings()  # type: ignore[call-arg]


class RedisSettings(BaseSettings):
    """Connection options for the shared bucket store."""

    host: str = Field(
        "localhost",
        description="Redis host name",
    )
    port: int = Field(
        6379,
        description="Redis port",
        ge=1,
        le=65535,
    )
    db: int = Field(
        0,
        description="Redis logical database index",
        ge=0,
    )
    password: str | None = Field(
        None,
        description="Redis AUTH password",
    )
    url: str | None = Field(
        None,
        description="Full redis:// URL; overrides host, port, db and password",
    )
    socket_timeout_seconds: float = Field(
        5.0,
        description="Socket connect/read timeout for Redis calls",
        gt=0,
    )

    model_config = SettingsConfigDict(
        env_prefix="REDIS_",
        case_sensitive=False,
    )

    def connection_url(self) -> str:
        """Return the URL used to build the Redis client."""
        if self.url:
            return self.url
        auth = f":{self.password}@" if self.password else ""
        return f"redis://{auth}{self.host}:{self.port}/{self.db}"


class LimiterSettings(BaseSettings):
    """Token bucket configuration, fixed for the lifetime of the process."""

    capacity: float = Field(
        10.0,
        description="Maximum tokens per identifier",
        gt=0,
        validation_alias=AliasChoices("LIMITER_CAPACITY", "RATE_LIMIT"),
    )
    refill_rate: float = Field(
        1.0,
        description="Tokens added per second",
        ge=0,
        validation_alias=AliasChoices("LIMITER_REFILL_RATE", "REFILL_RATE"),
    )
    ttl_seconds: int = Field(
        60,
        description="Idle time after which a bucket's stored state expires",
        gt=0,
        validation_alias=AliasChoices("LIMITER_TTL_SECONDS", "TTL_SECONDS"),
    )
    strategy: Literal["read_write", "atomic"] = Field(
        "read_write",
        description=(
            "read_write: two reads then one MULTI/EXEC batch (compatible, may "
            "over-admit under concurrency); atomic: one server-side script"
        ),
    )
    store_backend: Literal["redis", "memory"] = Field(
        "redis",
        description="Bucket store implementation; memory is single-process only",
    )
    key_prefix: str = Field(
        "rate_limit:ip",
        description="Namespace prefix for bucket keys",
        min_length=1,
    )
    call_timeout_seconds: float | None = Field(
        2.0,
        description="Deadline for one allow() call; set to \"none\" to disable it",
        gt=0,
    )

    model_config = SettingsConfigDict(
        env_prefix="LIMITER_",
        case_sensitive=False,
        populate_by_name=True,
        env_parse_none_str="none",
    )


class AppSettings(BaseSettings):
    """Application-wide configuration."""

    debug: bool = Field(
        False,
        description="Enable debug mode with verbose logging",
    )
    rate_limit_enabled: bool = Field(
        True,
        description="Enable per-client rate limiting on protected routes",
    )
    success_url: str | None = Field(
        None,
        description="Redirect target for allowed requests; unset serves them directly",
        validation_alias=AliasChoices("APP_SUCCESS_URL", "SUCCESS_URL"),
    )
    failure_message: str = Field(
        "Rate limit exceeded. Please try again later.",
        description="Fixed message returned with 429 responses",
    )

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        case_sensitive=False,
        populate_by_name=True,
    )


class LogSettings(BaseSettings):
    """Logging output configuration."""

    level: str = Field("INFO", description="Root log level")
    format: Literal["json", "plain"] = Field("json", description="Log line format")
    output: Literal["stdout", "file"] = Field("stdout", description="Log destination")
    file_path: str | None = Field(None, description="Log file path when output=file")
    max_bytes: int = Field(
        0,
        description="Rotate the log file at this size; 0 disables rotation",
        ge=0,
    )
    backup_count: int = Field(5, description="Rotated files to keep", ge=0)
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header used to accept and echo the correlation id",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.
    Raises validation errors on startup if settings are invalid.

    Environments:
    - development: Local development (DEBUG=true)
    - testing: Automated tests (uses .env.testing)
    - staging: Pre-production (uses .env.staging)
    - production: Production deployment (uses .env.production)
    """

    app_env: str = APP_ENV
    redis: RedisSettings = Field(default_factory=_build_redis_settings)
    limiter: LimiterSettings = Field(default_factory=_build_limiter_settings)
    app: AppSettings = Field(default_factory=_build_app_settings)
    log: LogSettings = Field(default_factory=_build_log_settings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


# Global settings instance - composed from domain-specific settings
# Nested settings are created via default_factory so env loading works.
settings = Settings()
