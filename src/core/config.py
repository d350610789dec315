"""Configuration management for fieldsync."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage Configuration
    sqlite_db_path: str = Field(default="./data/fieldsync.db", description="SQLite database file path")

    # Pydantic Logfire Configuration (optional)
    logfire_token: str | None = Field(default=None, description="Pydantic Logfire token for observability")
    environment: str = Field(default="production", description="Deployment environment name")

    # Scheduler Configuration
    enable_scheduler: bool = Field(default=True, description="Start background jobs on application startup")
    materialization_window_days: int = Field(
        default=14, ge=1, description="How many days ahead recurring templates are materialized"
    )
    materialization_hour: int = Field(default=2, ge=0, le=23, description="Hour of the nightly materialization run")
    overdue_scan_hour: int = Field(default=8, ge=0, le=23, description="Hour of the daily overdue scan")

    # Sync Gateway Configuration
    pull_completions_limit: int = Field(
        default=100, ge=1, description="Maximum number of completions returned by a single pull"
    )
    default_timezone: str = Field(
        default="America/Argentina/Buenos_Aires",
        description="IANA timezone used for recurrence rules that do not name one",
    )

    # Offline Client Configuration
    sync_base_url: str = Field(default="http://127.0.0.1:8000", description="Sync gateway base URL")
    device_id: str = Field(default="device", description="Client device identifier used in offline ids")
    offline_queue_db_path: str = Field(
        default="./data/offline_queue.db", description="SQLite file backing the client offline queue"
    )
    offline_retention_days: int = Field(default=7, ge=1, description="Days synced queue items are kept locally")
    offline_retry_alert_threshold: int = Field(
        default=5, ge=1, description="Retry count after which a queued item is surfaced to the user"
    )
    offline_flush_interval_seconds: float = Field(default=30.0, gt=0, description="Seconds between queue flushes")
    offline_max_backoff_seconds: float = Field(
        default=900.0, gt=0, description="Upper bound for the flush backoff delay"
    )

    @property
    def is_production(self) -> bool:
        """Whether the service runs in the production environment."""
        return self.environment == "production"


# Application Constants
class Constants:
    """Application-wide constants."""

    # API Configuration
    API_TIMEOUT_SECONDS: int = 30

    # Identity headers set by the upstream authenticating proxy
    HEADER_TENANT_ID: str = "X-Tenant-Id"
    HEADER_USER_ID: str = "X-User-Id"
    HEADER_USER_ROLE: str = "X-User-Role"

    # Pagination Defaults
    DEFAULT_PER_PAGE_LIMIT: int = 100
    FULL_LIST_BATCH_SIZE: int = 500

    # Chunk size for OR-filter batch fetching (checklist items by task id, etc.)
    FILTER_CHUNK_SIZE: int = 50

    # Task history
    TASK_HISTORY_LIMIT: int = 50

    # On-time grace period for compliance (days after due date)
    ON_TIME_GRACE_DAYS: int = 1

    # Offline id random suffix length (hex characters)
    OFFLINE_ID_SUFFIX_HEX_CHARS: int = 4

    # Job Tracker Configuration
    TRACKER_DEAD_LETTER_QUEUE_MAXLEN: int = 100
    TRACKER_ERROR_MAX_LENGTH: int = 500
    TRACKER_CONSECUTIVE_FAILURE_THRESHOLD: int = 3


def get_settings() -> Settings:
    """Get application settings (singleton pattern)."""
    return Settings()


# Global settings instance
settings = get_settings()
constants = Constants()
