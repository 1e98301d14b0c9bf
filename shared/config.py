"""
Shared configuration management for the flags evaluation service.
"""

from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


MIN_RULESETS_SYNC_INTERVAL_SECONDS = 5.0
MIN_ID_LISTS_SYNC_INTERVAL_SECONDS = 30.0


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="FLAGS_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")


class FlagsConfig(BaseConfig):
    """Configuration for the flags evaluation service."""

    service_name: str = "flags"
    host: str = "0.0.0.0"
    port: int = 8013

    # Upstream ruleset API
    api_url: str = Field(default="https://api.statsig.com/v1")
    server_secret: str = Field(default="")
    request_timeout_seconds: float = Field(default=10.0)

    # Synchronization
    rulesets_sync_interval_seconds: float = Field(default=10.0)
    id_lists_sync_interval_seconds: float = Field(default=60.0)
    init_timeout_seconds: Optional[float] = Field(default=None)
    local_mode: bool = Field(default=False)
    disable_id_lists: bool = Field(default=False)
    bootstrap_values: Optional[str] = Field(default=None)

    # Redis-backed collaborators; each is disabled when unset
    data_adapter_url: Optional[str] = Field(default=None)
    persistent_storage_url: Optional[str] = Field(default=None)

    # Optional MaxMind country database for ip_based conditions
    geoip_database_path: Optional[str] = Field(default=None)

    # Environment tags exposed to environment_field conditions
    environment_tier: Optional[str] = Field(default=None)

    @field_validator("rulesets_sync_interval_seconds")
    @classmethod
    def _clamp_rulesets_interval(cls, value: float) -> float:
        return max(value, MIN_RULESETS_SYNC_INTERVAL_SECONDS)

    @field_validator("id_lists_sync_interval_seconds")
    @classmethod
    def _clamp_id_lists_interval(cls, value: float) -> float:
        return max(value, MIN_ID_LISTS_SYNC_INTERVAL_SECONDS)


def get_config(**overrides) -> FlagsConfig:
    """Get configuration for the flags service."""
    return FlagsConfig(**overrides)
