"""
Configuration Management

Centralized configuration using Pydantic Settings.
"""

from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class Settings(BaseSettings):
    """Engine settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Application
    app_name: str = "Unified Query Engine"
    app_version: str = "1.0.0"
    environment: str = Field(default="development", validation_alias=_env("QUERY_ENGINE_ENV", "ENV"))
    log_level: str = Field(default="INFO", validation_alias=_env("QUERY_ENGINE_LOG_LEVEL", "LOG_LEVEL"))

    # Security
    secret_key: Optional[str] = Field(default=None, validation_alias=_env("QUERY_ENGINE_SECRET_KEY", "SECRET_KEY"))

    # Cache
    redis_url: Optional[str] = Field(default=None, validation_alias=_env("QUERY_ENGINE_REDIS_URL", "REDIS_URL"))
    cache_enabled: bool = Field(default=True, validation_alias=_env("QUERY_ENGINE_CACHE_ENABLED", "CACHE_ENABLED"))
    cache_connect_timeout: float = 2.0
    cache_socket_timeout: float = 5.0

    # Relational store
    database_url: Optional[str] = Field(default=None, validation_alias=_env("QUERY_ENGINE_DATABASE_URL", "DATABASE_URL"))
    db_pool_min: int = Field(default=1, validation_alias=_env("QUERY_ENGINE_DB_POOL_MIN", "DB_POOL_MIN"))
    db_pool_max: int = Field(default=10, validation_alias=_env("QUERY_ENGINE_DB_POOL_MAX", "DB_POOL_MAX"))

    # Directory service
    directory_base_dn: str = Field(default="DC=domain,DC=local", validation_alias=_env("QUERY_ENGINE_BASE_DN", "AD_BASE_DN"))
    directory_username: Optional[str] = Field(default=None, validation_alias=_env("AD_USERNAME"))
    directory_password: Optional[str] = Field(default=None, validation_alias=_env("AD_PASSWORD"))
    directory_domain: Optional[str] = Field(default=None, validation_alias=_env("AD_DOMAIN"))

    # Graph API
    graph_tenant_id: Optional[str] = Field(default=None, validation_alias=_env("AZURE_TENANT_ID"))
    graph_client_id: Optional[str] = Field(default=None, validation_alias=_env("AZURE_CLIENT_ID"))
    graph_client_secret: Optional[str] = Field(default=None, validation_alias=_env("AZURE_CLIENT_SECRET"))

    # Metrics
    metrics_enabled: bool = Field(default=True, validation_alias=_env("QUERY_ENGINE_METRICS_ENABLED", "METRICS_ENABLED"))
    metrics_retention_hours: int = Field(default=168, validation_alias=_env("QUERY_ENGINE_METRICS_RETENTION_HOURS"))
    slow_query_threshold_ms: float = Field(default=1000.0, validation_alias=_env("QUERY_ENGINE_SLOW_QUERY_MS"))
    user_credential_ttl_seconds: int = 300


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    return settings
