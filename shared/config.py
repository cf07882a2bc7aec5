"""
Shared configuration management for Be Better backend services.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="BEBETTER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    env: str = Field(default="local", description="Deployment environment")
    log_level: str = Field(default="info", description="Log level name")

    # Supabase (hosted Postgres + PostgREST)
    supabase_url: str = Field(default="http://localhost:54321", description="Supabase project URL")
    supabase_key: Optional[str] = Field(default=None, description="Supabase anon or service key")
    http_timeout_seconds: float = Field(default=10.0, gt=0, description="HTTP client timeout")

    # Reference data cache
    categories_table: str = Field(default="categories", description="Table holding categories")
    tags_table: str = Field(default="tags", description="Table holding tags")
    cache_refresh_interval_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Period of the background reference data refresh",
    )
    cache_fetch_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Upper bound for a single collection fetch",
    )


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
