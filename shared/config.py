"""
Shared configuration management for the VideoHub services.
"""

from typing import Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="VIDEOHUB_",
        env_file=".env",
        case_sensitive=False,
        extra="allow",
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Cache store. A URL wins over the discrete host/port fields.
    redis_url: Optional[str] = Field(default=None)
    redis_host: str = Field(default="localhost")
    redis_port: int = Field(default=6379)
    redis_db: int = Field(default=0)
    redis_password: Optional[str] = Field(default=None)

    cache_connect_timeout: float = Field(default=5.0)
    cache_operation_timeout: float = Field(default=1.0)
    cache_max_reconnect_attempts: int = Field(default=3)
    cache_reconnect_backoff_step: float = Field(default=0.05)
    cache_reconnect_backoff_max: float = Field(default=0.5)
    cache_ttl_overrides: Dict[str, int] = Field(default_factory=dict)
    cache_coalesce_misses: bool = Field(default=False)

    # Admin
    admin_api_key: Optional[str] = Field(default=None)


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
