"""
Shared configuration management for the identity cache layer.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="IDC_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local", description="Deployment environment name")
    log_level: str = Field(default="info", description="Root log level")
    service_name: str = Field(default="identity_cache", description="Name used for metrics and log context")


class IdentityCacheSettings(BaseConfig):
    """Settings for the caching layer."""

    # Global switch; when off every query goes straight to the record store
    enabled: bool = Field(default=True)

    # Key namespace; keeps two deployments sharing one backend apart
    namespace: str = Field(default="IDC")

    # Backend
    redis_url: str = Field(default="redis://localhost:6379/0")
    default_ttl: Optional[int] = Field(default=None, description="Passed to the backend on write, seconds")
    socket_timeout: float = Field(default=5.0)


def get_settings(**overrides) -> IdentityCacheSettings:
    """Get cache settings, environment first, then explicit overrides."""
    return IdentityCacheSettings(**overrides)
