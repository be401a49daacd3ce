"""Centralized configuration using pydantic-settings.

All configuration is loaded from environment variables and .env files.
Settings are read once by the production factory and handed to the
processors explicitly; nothing below reads them mid-call.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, PostgresDsn, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from dotmac.billing_engine.core.enums import UsageResolution, UsageSource


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class DatabaseSettings(BaseModel):
    """Database configuration."""

    url: PostgresDsn | None = Field(None, description="Full database URL")
    host: str = Field("localhost", description="Database host")
    port: int = Field(5432, description="Database port")
    database: str = Field("dotmac_billing", description="Database name")
    username: str = Field("dotmac", description="Database username")
    password: str = Field("", description="Database password")

    # Connection pool
    pool_size: int = Field(10, description="Connection pool size")
    max_overflow: int = Field(20, description="Max overflow connections")
    pool_timeout: int = Field(30, description="Pool timeout in seconds")
    pool_recycle: int = Field(3600, description="Recycle connections after seconds")
    pool_pre_ping: bool = Field(True, description="Test connections before use")

    echo: bool = Field(False, description="Echo SQL statements")
    sqlite_path: str = Field(
        "./dotmac_billing_dev.sqlite", description="SQLite file used in development"
    )


class CelerySettings(BaseModel):
    """Celery configuration for the billing job queues."""

    broker_url: str = Field("redis://localhost:6379/0", description="Broker URL")
    result_backend: str = Field("redis://localhost:6379/1", description="Result backend")
    usage_queue: str = Field("billing_usage", description="Queue for usage aggregation jobs")
    invoice_queue: str = Field("billing_invoice", description="Queue for invoice build jobs")
    payment_queue: str = Field("billing_payment", description="Queue for payment sync jobs")
    max_retries: int = Field(8, description="Max retries for retryable job failures")
    retry_backoff_max: int = Field(600, description="Upper bound for retry backoff (seconds)")
    task_soft_time_limit: int = Field(240, description="Soft time limit")
    task_time_limit: int = Field(300, description="Hard time limit")


class ObservabilitySettings(BaseModel):
    """Observability configuration."""

    log_level: LogLevel = Field(LogLevel.INFO, description="Log level")
    log_format: str = Field("json", description="Log format (json or text)")
    enable_metrics: bool = Field(True, description="Enable metrics collection")
    service_name: str = Field("dotmac-billing-engine", description="Service name")


class BillingSettings(BaseModel):
    """Billing engine behaviour."""

    default_currency: str = Field("usd", description="Currency used when nothing else applies")
    default_usage_resolution: UsageResolution = Field(
        UsageResolution.DAILY, description="Resolution for usage jobs that omit one"
    )
    default_usage_source: UsageSource = Field(
        UsageSource.WORKER, description="Aggregate source for usage jobs that omit one"
    )
    invoice_number_prefix: str = Field("INV", description="Prefix for generated invoice numbers")
    dedupe_invoices_by_period: bool = Field(
        True,
        description="Return the existing invoice for a (subscription, period) instead of "
        "creating another one",
    )
    usage_insert_batch_size: int = Field(
        500, ge=1, description="Maximum usage events per INSERT statement"
    )

    @field_validator("default_currency")
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        return v.lower()


class BillingApiSettings(BaseModel):
    """Remote billing API used by the HTTP store backend."""

    base_url: str = Field("http://localhost:8000/internal/billing", description="API base URL")
    token: str | None = Field(None, description="Bearer token for the billing API")
    timeout_seconds: float = Field(10.0, description="Request timeout")


class Settings(BaseSettings):
    """Main billing engine settings.

    All settings can be overridden via environment variables.
    For nested settings, use double underscore: DATABASE__POOL_SIZE=20
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    app_name: str = Field("dotmac-billing-engine", description="Application name")
    app_version: str = Field("1.0.0", description="Application version")
    environment: Environment = Field(Environment.DEVELOPMENT, description="Deployment environment")

    store_backend: Literal["sqlalchemy", "http"] = Field(
        "sqlalchemy", description="Which billing store implementation the workers use"
    )

    database: DatabaseSettings = DatabaseSettings()  # type: ignore[call-arg]
    celery: CelerySettings = CelerySettings()  # type: ignore[call-arg]
    observability: ObservabilitySettings = ObservabilitySettings()  # type: ignore[call-arg]
    billing: BillingSettings = BillingSettings()  # type: ignore[call-arg]
    billing_api: BillingApiSettings = BillingApiSettings()  # type: ignore[call-arg]

    @field_validator("environment", mode="before")
    @classmethod
    def validate_environment(cls, v: Any) -> Any:
        if isinstance(v, str):
            return Environment(v.lower())
        return v

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        return self.environment == Environment.DEVELOPMENT


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get global settings instance (singleton)."""
    global _settings
    if _settings is None:
        _settings = Settings()  # type: ignore[call-arg]
    return _settings


def reset_settings() -> None:
    """Reset settings (mainly for testing)."""
    global _settings
    _settings = None
