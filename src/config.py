"""
Centralized configuration management for the API usage ledger.

This module provides a Pydantic Settings-based configuration system that:
- Validates environment variables at startup
- Provides type coercion (strings to ints, bools, etc.)
- Groups related settings for better organization
- Exposes methods to check which backends are enabled
- Supports .env file loading

Usage:
    from src.config import get_settings

    settings = get_settings()
    if settings.is_database_configured:
        # Use the Postgres usage store
        ...
"""

from functools import lru_cache
from typing import Dict, List, Literal, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.types.usage import (
    DEFAULT_FALLBACK_DAILY_LIMIT,
    MAX_DAILY_LIMIT,
    MIN_DAILY_LIMIT,
    ApiType,
)


# =============================================================================
# Database Settings (Postgres)
# =============================================================================


class DatabaseSettings(BaseSettings):
    """Configuration for the Postgres connection pool."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_url: Optional[SecretStr] = Field(
        default=None,
        description="Postgres connection URL (may point at a pooler)",
    )
    database_url_direct: Optional[SecretStr] = Field(
        default=None,
        description="Direct Postgres connection URL, preferred when set",
    )
    database_pool_min_size: int = Field(
        default=1,
        ge=0,
        description="Minimum connections kept in the pool",
    )
    database_pool_max_size: int = Field(
        default=10,
        ge=1,
        description="Maximum connections in the pool",
    )
    database_command_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Per-statement timeout in seconds",
    )

    @property
    def is_configured(self) -> bool:
        """Check if a Postgres URL is available."""
        return bool(self.database_url_direct or self.database_url)

    @property
    def dsn(self) -> Optional[str]:
        """The URL to connect with, direct URL first."""
        secret = self.database_url_direct or self.database_url
        return secret.get_secret_value() if secret else None


# =============================================================================
# Rate Limit Settings
# =============================================================================


class RateLimitSettings(BaseSettings):
    """Configuration for the per-user daily API quotas."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    rate_limit_fallback_daily_limit: int = Field(
        default=DEFAULT_FALLBACK_DAILY_LIMIT,
        ge=MIN_DAILY_LIMIT,
        le=MAX_DAILY_LIMIT,
        description="Daily limit used when an api type has no global row",
    )
    rate_limit_failure_mode: Literal["fail_closed", "fail_open"] = Field(
        default="fail_closed",
        description="Behavior of usage checks when storage is unavailable",
    )
    rate_limit_timezone: str = Field(
        default="UTC",
        description="IANA timezone defining the calendar day boundary",
    )
    rate_limit_storage: Literal["auto", "memory", "postgres"] = Field(
        default="auto",
        description="Usage store backend (auto picks postgres when configured)",
    )
    rate_limit_default_limits: Dict[str, int] = Field(
        default_factory=lambda: {
            api_type.value: DEFAULT_FALLBACK_DAILY_LIMIT for api_type in ApiType
        },
        description="Global limits seeded at startup for api types without a row",
    )

    @field_validator("rate_limit_timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {value}") from e
        return value

    @field_validator("rate_limit_default_limits")
    @classmethod
    def validate_default_limits(cls, value: Dict[str, int]) -> Dict[str, int]:
        known = {api_type.value for api_type in ApiType}
        for api_type, limit in value.items():
            if api_type not in known:
                raise ValueError(f"Unknown api type in default limits: {api_type}")
            if not MIN_DAILY_LIMIT <= limit <= MAX_DAILY_LIMIT:
                raise ValueError(
                    f"Default limit for {api_type} must be between "
                    f"{MIN_DAILY_LIMIT} and {MAX_DAILY_LIMIT}"
                )
        return value

    @property
    def fail_open(self) -> bool:
        return self.rate_limit_failure_mode == "fail_open"

    @property
    def default_limits(self) -> Dict[ApiType, int]:
        return {ApiType(k): v for k, v in self.rate_limit_default_limits.items()}


# =============================================================================
# Security Settings
# =============================================================================


class SecuritySettings(BaseSettings):
    """Configuration for security features."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Environment
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment",
    )

    # Admin access
    admin_api_token: Optional[SecretStr] = Field(
        default=None,
        description="Bearer token accepted on /api/admin routes",
    )

    # CORS
    allowed_origins: str = Field(
        default="http://localhost:3000,http://127.0.0.1:3000",
        description="Comma-separated list of allowed CORS origins",
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"

    @property
    def has_admin_token(self) -> bool:
        return bool(self.admin_api_token and self.admin_api_token.get_secret_value())

    @property
    def origins_list(self) -> List[str]:
        """Get parsed list of allowed origins."""
        return [
            origin.strip()
            for origin in self.allowed_origins.split(",")
            if origin.strip()
        ]


# =============================================================================
# Logging Settings
# =============================================================================


class LoggingSettings(BaseSettings):
    """Configuration for logging."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    log_format_json: bool = Field(
        default=False,
        description="Force JSON log format in development",
    )
    request_logging_enabled: bool = Field(
        default=True,
        description="Enable request logging middleware",
    )


# =============================================================================
# Monitoring Settings (Sentry)
# =============================================================================


class SentrySettings(BaseSettings):
    """Configuration for Sentry error tracking."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    sentry_dsn: Optional[str] = Field(
        default=None,
        description="Sentry DSN for error tracking",
    )
    sentry_environment: str = Field(
        default="development",
        description="Sentry environment name",
    )
    sentry_traces_sample_rate: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description="Sentry transaction sample rate (0.0 to 1.0)",
    )
    sentry_release: Optional[str] = Field(
        default="api-usage-ledger@1.0.0",
        description="Sentry release version",
    )
    server_name: str = Field(
        default="api-usage-ledger",
        description="Server name for Sentry",
    )

    @property
    def is_configured(self) -> bool:
        """Check if Sentry is configured."""
        return bool(self.sentry_dsn)


# =============================================================================
# Health Check Settings
# =============================================================================


class HealthSettings(BaseSettings):
    """Configuration for the health endpoints."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    health_cache_ttl_seconds: float = Field(
        default=300.0,
        ge=0.0,
        description="How long a storage probe result is reused",
    )


# =============================================================================
# Main Settings Class
# =============================================================================


class Settings(BaseSettings):
    """
    Main settings class that aggregates all configuration groups.

    This class provides a single entry point for all application configuration
    with validation, type coercion, and backend detection.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Nested settings groups
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    sentry: SentrySettings = Field(default_factory=SentrySettings)
    health: HealthSettings = Field(default_factory=HealthSettings)

    # ==========================================================================
    # Feature Detection Properties
    # ==========================================================================

    @property
    def is_database_configured(self) -> bool:
        """Check if Postgres is available."""
        return self.database.is_configured

    @property
    def is_sentry_configured(self) -> bool:
        """Check if Sentry error tracking is available."""
        return self.sentry.is_configured

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.security.is_production

    @property
    def storage_backend(self) -> str:
        """Resolve the usage store backend name ("memory" or "postgres")."""
        choice = self.rate_limit.rate_limit_storage
        if choice == "auto":
            return "postgres" if self.is_database_configured else "memory"
        return choice

    # ==========================================================================
    # Configuration Summary
    # ==========================================================================

    def get_config_summary(self) -> dict:
        """
        Get a summary of configuration status for logging.

        This method returns a dictionary with configuration status
        WITHOUT exposing any secrets.
        """
        return {
            "environment": self.security.environment,
            "storage_backend": self.storage_backend,
            "database_configured": self.is_database_configured,
            "sentry_configured": self.is_sentry_configured,
            "admin_token_configured": self.security.has_admin_token,
            "failure_mode": self.rate_limit.rate_limit_failure_mode,
            "timezone": self.rate_limit.rate_limit_timezone,
            "fallback_daily_limit": self.rate_limit.rate_limit_fallback_daily_limit,
            "allowed_origins": self.security.origins_list,
            "log_level": self.logging.log_level,
        }


# =============================================================================
# Settings Singleton
# =============================================================================


@lru_cache()
def get_settings() -> Settings:
    """
    Get the application settings singleton.

    Uses lru_cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload settings.

    Returns:
        Validated Settings instance

    Raises:
        ValidationError: If required configuration is missing or invalid
    """
    return Settings()


def reload_settings() -> Settings:
    """
    Reload settings from environment.

    This clears the cache and returns fresh settings.
    Useful for testing or after environment changes.
    """
    get_settings.cache_clear()
    return get_settings()
