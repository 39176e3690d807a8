"""
Centralized configuration management for the credential broker.

This module provides a unified configuration system with support for:
- Environment variables
- Feature flags
- Provider descriptors loaded from a JSON file
- Validation using Pydantic
"""

import json
import os
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from .constants import EnvironmentVariable, Limits, LogLevel
from .schemas.provider_schemas import ProviderDescriptor, provider_list_adapter


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


class DatabaseConfig(BaseModel):
    """Database connection configuration."""

    connection_string: str = Field(
        default_factory=lambda: os.getenv(
            EnvironmentVariable.DATABASE_URL.value, "sqlite:///./credential_broker.db"
        ),
        description="Database connection string",
    )
    pool_size: int = Field(default=5, description="Connection pool size")
    max_overflow: int = Field(default=10, description="Maximum overflow connections")
    pool_timeout: int = Field(default=30, description="Pool timeout in seconds")
    echo: bool = Field(default=False, description="Echo SQL statements")


class QueueConfig(BaseModel):
    """Azure Storage Queue configuration for log shipping."""

    connection_string: str = Field(
        default_factory=lambda: os.getenv(EnvironmentVariable.AZURE_STORAGE_CONNECTION.value, ""),
        description="Azure Storage connection string",
    )
    logs_queue_name: str = Field(default="logs-queue", description="Logs queue name")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(
        default_factory=lambda: os.getenv(EnvironmentVariable.LOG_LEVEL.value, LogLevel.INFO.value),
        validate_default=True,
        description="Logging level",
    )

    @field_validator("level")
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        valid_levels = {level.value for level in LogLevel}
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v.upper()


class FeatureFlags(BaseModel):
    """Feature flags for controlling broker behavior."""

    enable_logs_queue: bool = Field(
        default_factory=lambda: _env_flag(EnvironmentVariable.ENABLE_LOGS_QUEUE.value),
        description="Ship logs to an Azure Storage Queue",
    )
    enable_operation_context: bool = Field(
        default=True, description="Enable operation context tracking"
    )
    enable_audit_signing: bool = Field(
        default=True, description="Sign audit events with an HMAC"
    )


class VaultConfig(BaseModel):
    """Secret vault configuration."""

    encryption_key: str = Field(
        default_factory=lambda: os.getenv(EnvironmentVariable.VAULT_KEY.value, ""),
        description="Symmetric key (a Fernet key outside PostgreSQL)",
    )
    statement_timeout_ms: int = Field(
        default=5000, gt=0, description="Upper bound for a single vault statement"
    )


class OAuthConfig(BaseModel):
    """OAuth flow configuration."""

    flow_ttl_seconds: int = Field(default=600, gt=0, description="Lifetime of a flow state")
    purge_grace_seconds: int = Field(
        default=86400, ge=0, description="How long finished flow states are kept"
    )
    verifier_bytes: int = Field(
        default=64,
        ge=Limits.MIN_PKCE_VERIFIER_BYTES,
        le=Limits.MAX_PKCE_VERIFIER_BYTES,
        description="Random bytes in a PKCE code verifier",
    )
    http_timeout_seconds: float = Field(default=10.0, gt=0, description="Provider call timeout")
    default_redirect_uri: Optional[str] = Field(
        default_factory=lambda: os.getenv(EnvironmentVariable.OAUTH_REDIRECT_URI.value),
        description="Callback URL used when a provider does not set its own",
    )


class RefreshConfig(BaseModel):
    """Background token refresh configuration."""

    interval_seconds: int = Field(default=180, gt=0, description="Time between refresh cycles")
    refresh_window_seconds: int = Field(
        default=300, gt=0, description="Refresh tokens expiring within this window"
    )
    max_workers: int = Field(default=4, gt=0, description="Refresh worker pool size")
    per_provider_concurrency: int = Field(
        default=2, gt=0, description="Concurrent refresh calls per provider"
    )
    max_consecutive_failures: int = Field(
        default=5, gt=0, description="Transient failures tolerated before status becomes error"
    )
    retry_backoff_base: int = Field(default=30, gt=0, description="Backoff base (seconds)")
    retry_backoff_max: int = Field(default=1800, gt=0, description="Maximum backoff (seconds)")
    claim_ttl_seconds: int = Field(
        default=120, gt=0, description="Lifetime of a refresh claim held by a worker"
    )
    batch_size: int = Field(default=100, gt=0, description="Candidates fetched per cycle")


class BrokerConfig(BaseModel):
    """Credential broker request path configuration."""

    request_timeout_seconds: float = Field(
        default=5.0, gt=0, description="Upper bound for the vault decrypt on request_secret"
    )


class SecurityConfig(BaseModel):
    """Security-related configuration."""

    audit_signing_key: str = Field(
        default_factory=lambda: os.getenv(EnvironmentVariable.AUDIT_SIGNING_KEY.value, ""),
        description="HMAC key for audit event signatures",
    )


def _load_providers() -> List[ProviderDescriptor]:
    path = os.getenv(EnvironmentVariable.PROVIDERS_FILE.value)
    if not path:
        return []
    with open(path, "r", encoding="utf-8") as f:
        return provider_list_adapter.validate_python(json.load(f))


class AppConfig(BaseModel):
    """Main application configuration."""

    environment: str = Field(
        default_factory=lambda: os.getenv(EnvironmentVariable.APP_ENV.value, "development"),
        description="Application environment",
    )
    debug: bool = Field(
        default_factory=lambda: _env_flag(EnvironmentVariable.DEBUG.value),
        description="Debug mode",
    )

    # Sub-configurations
    database: DatabaseConfig = Field(
        default_factory=DatabaseConfig, description="Database configuration"
    )
    queue: QueueConfig = Field(default_factory=QueueConfig, description="Queue configuration")
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig, description="Logging configuration"
    )
    features: FeatureFlags = Field(default_factory=FeatureFlags, description="Feature flags")
    vault: VaultConfig = Field(default_factory=VaultConfig, description="Vault configuration")
    oauth: OAuthConfig = Field(default_factory=OAuthConfig, description="OAuth configuration")
    refresh: RefreshConfig = Field(
        default_factory=RefreshConfig, description="Token refresh configuration"
    )
    broker: BrokerConfig = Field(default_factory=BrokerConfig, description="Broker configuration")
    security: SecurityConfig = Field(
        default_factory=SecurityConfig, description="Security configuration"
    )

    providers: List[ProviderDescriptor] = Field(
        default_factory=_load_providers, description="Registered provider descriptors"
    )

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Create configuration from environment variables."""
        return cls()


# Global configuration instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def set_config(config: AppConfig) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config


def reset_config() -> None:
    """Reset the global configuration instance."""
    global _config
    _config = None
