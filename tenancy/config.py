"""
Centralized configuration management for the tenancy engine.

This module provides a Pydantic Settings-based configuration system that:
- Validates environment variables at startup
- Provides type coercion (strings to ints, bools, etc.)
- Groups related settings for better organization
- Supports .env file loading

Usage:
    from tenancy.config import get_settings

    settings = get_settings()
    if settings.tenancy.max_members is not None:
        # Enforce the member limit
        ...
"""

from datetime import timedelta
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# =============================================================================
# Tenancy Settings
# =============================================================================


class TenancySettings(BaseSettings):
    """Configuration for organizations, members, teams and invitations."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="TENANCY_",
        extra="ignore",
    )

    creator_role: str = Field(
        default="owner",
        description="Role granted to whoever creates an organization",
    )
    previous_owner_role: str = Field(
        default="admin",
        description="Role the old owner falls back to after an ownership transfer",
    )
    invitation_expiration_hours: int = Field(
        default=48,
        ge=1,
        le=24 * 365,
        description="Hours before a pending invitation expires",
    )

    # Limits (None means unlimited)
    max_organizations: Optional[int] = Field(
        default=None,
        ge=1,
        description="Maximum organizations a single user may create",
    )
    max_members: Optional[int] = Field(
        default=None,
        ge=1,
        description="Maximum members per organization",
    )
    max_teams: Optional[int] = Field(
        default=None,
        ge=1,
        description="Maximum teams per organization",
    )

    default_page_size: int = Field(
        default=50,
        ge=1,
        le=500,
        description="Page size used when a paginated list omits a limit",
    )

    @field_validator("creator_role", "previous_owner_role")
    @classmethod
    def validate_role_name(cls, v: str) -> str:
        """Role names are non-empty, trimmed strings."""
        v = v.strip()
        if not v:
            raise ValueError("Role name cannot be empty")
        return v

    @property
    def invitation_expiration(self) -> timedelta:
        """Default invitation lifetime."""
        return timedelta(hours=self.invitation_expiration_hours)


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


# =============================================================================
# Redis Settings
# =============================================================================


class RedisSettings(BaseSettings):
    """Configuration for Redis (optional document storage)."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    redis_url: Optional[str] = Field(
        default=None,
        description="Redis connection URL",
    )
    redis_key_prefix: str = Field(
        default="tenancy:",
        description="Prefix for every key written by the document store",
    )

    @property
    def is_configured(self) -> bool:
        """Check if Redis is configured."""
        return bool(self.redis_url)


# =============================================================================
# Main Settings Class
# =============================================================================


class Settings(BaseSettings):
    """
    Main settings class that aggregates all configuration groups.

    This class provides a single entry point for all configuration
    with validation and type coercion.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: str = Field(
        default="development",
        description="Deployment environment name",
    )

    # Nested settings groups
    tenancy: TenancySettings = Field(default_factory=TenancySettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() in ("production", "prod")

    @property
    def is_redis_configured(self) -> bool:
        """Check if Redis is available."""
        return self.redis.is_configured

    def get_config_summary(self) -> dict:
        """
        Get a summary of configuration status for logging.

        This method returns a dictionary with configuration status
        WITHOUT exposing the Redis URL (it may carry credentials).
        """
        return {
            "environment": self.environment,
            "creator_role": self.tenancy.creator_role,
            "invitation_expiration_hours": self.tenancy.invitation_expiration_hours,
            "max_organizations": self.tenancy.max_organizations,
            "max_members": self.tenancy.max_members,
            "max_teams": self.tenancy.max_teams,
            "redis_configured": self.is_redis_configured,
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
        ValidationError: If configuration is invalid
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
