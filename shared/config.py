"""
Shared configuration management for PTO Connect API.
"""

from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="PTO_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")
    api_version: str = Field(default="v1")
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    trust_proxy_headers: bool = Field(default=False, description="Read X-Forwarded-For and X-Real-IP")

    # External services
    redis_url: str = Field(default="", description="Empty disables the shared store")
    supabase_url: str = Field(default="")
    supabase_service_role_key: str = Field(default="")
    supabase_auth_timeout_seconds: float = Field(default=5.0)

    # Process-local fallback store
    memory_store_max_entries: int = Field(default=1000)
    store_recheck_seconds: float = Field(default=30.0)

    # Response cache
    cache_enabled: bool = Field(default=True)
    cache_memory_fallback: bool = Field(default=True)
    cache_default_ttl: int = Field(default=300)
    cache_max_ttl: int = Field(default=3600)

    # Rate limiting
    rate_limit_enabled: bool = Field(default=True)
    rate_limit_memory_max_entries: int = Field(default=10000)
    rate_limit_violation_log_size: int = Field(default=1000)
    rate_limit_skip_paths: List[str] = Field(
        default_factory=lambda: [
            "/api/health",
            "/api/docs",
            "/api/docs/openapi.json",
            "/api/docs/openapi.yaml",
        ]
    )

    @property
    def is_production(self) -> bool:
        return self.env.lower() == "production"


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
