"""Application configuration loaded from environment and config files."""

from __future__ import annotations

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings

# Lease must outlive the slowest channel call by at least this margin.
_LEASE_MARGIN_SECONDS = 5


class SchedulerConfig(BaseSettings):
    """Due-queue polling and worker configuration."""

    model_config = {"env_prefix": "TASKFLOW_SCHEDULER_"}

    poll_interval_seconds: float = 30.0
    workers: int = 4
    batch_limit: int = 100
    lease_seconds: int = 60
    expiry_hours: int = 24
    default_reschedule_minutes: int = 60


class DeliveryConfig(BaseSettings):
    """Channel delivery and retry defaults."""

    model_config = {"env_prefix": "TASKFLOW_DELIVERY_"}

    channel_timeout_seconds: float = 10.0
    max_retries: int = 3
    retry_interval_seconds: int = 300
    webhook_url: str | None = None


class RetentionConfig(BaseSettings):
    """Cleanup sweep configuration."""

    model_config = {"env_prefix": "TASKFLOW_RETENTION_"}

    retention_days: int = 30


class ContextConfig(BaseSettings):
    """User context provider configuration."""

    model_config = {"env_prefix": "TASKFLOW_CONTEXT_"}

    cache_ttl_seconds: float = 5.0


class NotificationConfig(BaseSettings):
    """Notification content and batching defaults."""

    model_config = {"env_prefix": "TASKFLOW_NOTIFICATION_"}

    templates_path: str = "config/notification_templates.yml"
    default_max_batch_size: int = 5
    default_batch_delay_seconds: int = 300


class DatabaseConfig(BaseSettings):
    """Persistence configuration. ``url=None`` selects the in-memory store."""

    model_config = {"env_prefix": "TASKFLOW_DB_"}

    url: str | None = None
    echo: bool = False
    pool_size: int = 5


class AuditConfig(BaseSettings):
    """Audit logging configuration."""

    model_config = {"env_prefix": "TASKFLOW_AUDIT_"}

    log_dir: str = "data/audit"
    enabled: bool = True


class Settings(BaseSettings):
    """Root application settings."""

    model_config = {"env_prefix": "TASKFLOW_"}

    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    notification: NotificationConfig = Field(default_factory=NotificationConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)

    @model_validator(mode="after")
    def _lease_outlives_transport(self) -> "Settings":
        minimum = int(self.delivery.channel_timeout_seconds) + _LEASE_MARGIN_SECONDS
        if self.scheduler.lease_seconds < minimum:
            self.scheduler.lease_seconds = minimum
        return self
