"""
Shared configuration management for the ClientFlow API layer.
"""

from typing import List, Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="CLIENTFLOW_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # HTTP surface
    cors_allow_origins: List[str] = Field(default_factory=lambda: ["*"])
    trust_forwarded_headers: bool = Field(default=False)

    # State backends
    rate_limit_backend: str = Field(default="memory")
    redis_url: str = Field(default="redis://localhost:6379/0")

    # Rate limiting
    rate_limit_window_seconds: int = Field(default=900, gt=0)
    rate_limit_max_per_ip: int = Field(default=100, gt=0)
    rate_limit_max_per_org: int = Field(default=1000, gt=0)
    sweep_interval_seconds: float = Field(default=60.0, ge=0)

    # Security
    jwt_secret: Optional[SecretStr] = Field(default=None)
    jwt_secret_required: bool = Field(default=False)
    jwt_algorithm: str = Field(default="HS256")
    jwt_issuer: str = Field(default="clientflow-ai-suite")
    jwt_audience: str = Field(default="api.clientflow.ai")
    token_default_ttl_seconds: int = Field(default=3600, gt=0)
    token_max_ttl_seconds: int = Field(default=30 * 24 * 3600, gt=0)

    # Business data API
    business_api_url: Optional[str] = Field(default=None)
    business_api_timeout_seconds: float = Field(default=30.0, gt=0)

    @property
    def is_production(self) -> bool:
        return self.env.lower() in ("production", "prod")


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
