"""
Shared configuration management for the gateway.
"""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="GATEWAY_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    env: str = "local"
    log_level: str = "info"


class ServiceConfig(BaseConfig):
    """Gateway process settings."""

    service_name: str = "gateway"
    host: str = "0.0.0.0"
    port: int = 8000

    # Topology document (resources, bindings, adapters)
    config_file: str = "service_gateway/config/gateway.yaml"
    reload_grace_seconds: float = 30.0

    # External IAM gate
    auth_mode: str = "none"
    auth_introspection_url: Optional[str] = None
    auth_client_id: Optional[str] = None
    auth_client_secret: Optional[str] = None
    auth_required_scope: Optional[str] = None
    auth_timeout_seconds: float = 5.0


def get_config(service_name: str = "gateway", **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, **overrides)
