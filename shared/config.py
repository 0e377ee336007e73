"""
Shared configuration management for the Quota Access Layer.
"""

from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="QUOTA_",
        case_sensitive=False,
        extra="allow",
        populate_by_name=True,
    )

    # Environment
    env: str = "local"
    log_level: str = "info"

    # Shared bucket store
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        validation_alias=AliasChoices("QUOTA_REDIS_URL", "REDIS_URL"),
    )
    redis_socket_timeout: float = 2.0

    # Rate limiting
    fail_open: bool = True
    tiers_file: Optional[str] = None
    default_user_tier: str = "standard"

    # Security
    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
