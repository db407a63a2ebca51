import logging
import os
import sys
from typing import Optional

from pydantic import computed_field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="allow")

    # Infrastructure dependencies
    postgres_user: str
    postgres_host: str
    postgres_password: str
    postgres_port: int
    postgres_db: str
    redis_host: str
    redis_port: int
    redis_db: Optional[int] = None

    # Redis connection resilience
    redis_conn_timeout: int = 5
    redis_conn_retries: int = 5
    redis_conn_retry_delay: int = 1
    redis_retry_on_timeout: bool = True
    redis_max_connections: Optional[int] = None
    redis_socket_keepalive: bool = True
    redis_health_check_interval: int = 30

    # Local time for cron schedules, notify window and slot labels
    timezone: str = "Asia/Jakarta"

    # Social media fetch run
    fetch_cron_enabled: bool = True
    fetch_concurrency: int = 4
    fetch_run_budget_seconds: int = 30 * 60
    fetch_intake_buffer_seconds: int = 20
    fetch_lock_key: str = "cron:dirfetch:sosmed"
    fetch_lock_ttl_margin_seconds: int = 5 * 60
    # Lock TTL is extended this often while a run is in progress
    fetch_lock_refresh_interval_seconds: float = 10 * 60

    # Posts are fetched while local hour < cutoff; engagement refresh is unaffected
    post_fetch_cutoff_hour: int = 21
    extended_post_fetch_client_ids: list[str] = []
    extended_post_fetch_cutoff_hour: int = 23

    # Notification policy
    notify_interval_seconds: int = 60 * 60
    notify_window_start_hour: int = 6
    notify_window_end_hour: int = 22  # inclusive
    deletion_absolute_threshold: int = 5
    deletion_ratio_threshold: float = 0.5
    notification_max_attempts: int = 5
    added_items_preview_limit: int = 10

    # Notification outbox delivery
    outbox_worker_enabled: bool = True
    outbox_batch_size: int = 20
    outbox_base_delay_seconds: int = 30
    outbox_max_backoff_seconds: int = 60 * 60
    outbox_processing_stale_seconds: int = 5 * 60
    outbox_error_max_length: int = 800

    # Operator alerts
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None

    # "module:function" returning the deployment's collaborator instances
    collaborators_factory: Optional[str] = None

    # Dev
    testing: bool = False
    dev: bool = False

    @field_validator("extended_post_fetch_client_ids", mode="after")
    @classmethod
    def normalize_extended_client_ids(cls, value: list[str]) -> list[str]:
        return [item.strip().upper() for item in value if item and item.strip()]

    @model_validator(mode="after")
    def validate_fetch_settings(self):
        """Ensure run orchestration knobs are sane."""
        if self.fetch_concurrency <= 0:
            logging.error(
                "FETCH_CONCURRENCY must be greater than zero. Current value: %s",
                self.fetch_concurrency,
            )
            sys.exit(1)

        if self.fetch_run_budget_seconds <= 0:
            logging.error(
                "FETCH_RUN_BUDGET_SECONDS must be greater than zero. Current value: %s",
                self.fetch_run_budget_seconds,
            )
            sys.exit(1)

        if not 0 <= self.fetch_intake_buffer_seconds < self.fetch_run_budget_seconds:
            logging.error(
                "FETCH_INTAKE_BUFFER_SECONDS (%s) must be non-negative and shorter than"
                " FETCH_RUN_BUDGET_SECONDS (%s).",
                self.fetch_intake_buffer_seconds,
                self.fetch_run_budget_seconds,
            )
            sys.exit(1)

        if self.fetch_lock_ttl_margin_seconds < 0:
            logging.error(
                "FETCH_LOCK_TTL_MARGIN_SECONDS cannot be negative. Current value: %s",
                self.fetch_lock_ttl_margin_seconds,
            )
            sys.exit(1)

        if not 0 < self.fetch_lock_refresh_interval_seconds < self.fetch_lock_ttl_seconds:
            logging.error(
                "FETCH_LOCK_REFRESH_INTERVAL_SECONDS (%s) must be positive and shorter than"
                " the fetch lock TTL (%s).",
                self.fetch_lock_refresh_interval_seconds,
                self.fetch_lock_ttl_seconds,
            )
            sys.exit(1)

        return self

    @model_validator(mode="after")
    def validate_notification_settings(self):
        """Ensure notify window, thresholds and outbox backoff are sane."""
        start, end = self.notify_window_start_hour, self.notify_window_end_hour
        if not (0 <= start <= 23 and 0 <= end <= 23 and start <= end):
            logging.error(
                "NOTIFY_WINDOW_START_HOUR (%s) and NOTIFY_WINDOW_END_HOUR (%s) must be"
                " hours in 0..23 with start <= end.",
                start,
                end,
            )
            sys.exit(1)

        if not 0 < self.deletion_ratio_threshold <= 1:
            logging.error(
                "DELETION_RATIO_THRESHOLD must be in (0, 1]. Current value: %s",
                self.deletion_ratio_threshold,
            )
            sys.exit(1)

        if self.notification_max_attempts < 1:
            logging.error(
                "NOTIFICATION_MAX_ATTEMPTS must be at least 1. Current value: %s",
                self.notification_max_attempts,
            )
            sys.exit(1)

        if self.outbox_batch_size <= 0:
            logging.error(
                "OUTBOX_BATCH_SIZE must be greater than zero. Current value: %s",
                self.outbox_batch_size,
            )
            sys.exit(1)

        if self.outbox_base_delay_seconds <= 0:
            logging.error(
                "OUTBOX_BASE_DELAY_SECONDS must be greater than zero. Current value: %s",
                self.outbox_base_delay_seconds,
            )
            sys.exit(1)

        if self.outbox_max_backoff_seconds < self.outbox_base_delay_seconds:
            logging.error(
                "OUTBOX_MAX_BACKOFF_SECONDS (%s) is shorter than OUTBOX_BASE_DELAY_SECONDS (%s).",
                self.outbox_max_backoff_seconds,
                self.outbox_base_delay_seconds,
            )
            sys.exit(1)

        if self.telegram_bot_token and not self.telegram_chat_id:
            logging.warning(
                "TELEGRAM_BOT_TOKEN is set without TELEGRAM_CHAT_ID. "
                "Operator alerts will only be logged."
            )

        return self

    @computed_field
    @property
    def fetch_lock_ttl_seconds(self) -> int:
        return self.fetch_run_budget_seconds + self.fetch_lock_ttl_margin_seconds

    @computed_field
    @property
    def sync_database_url(self) -> str:
        return (
            f"postgresql://{self.postgres_user}:"
            f"{self.postgres_password}@{self.postgres_host}:"
            f"{self.postgres_port}/{self.postgres_db}"
        )

    @computed_field
    @property
    def database_url(self) -> str:
        return (
            f"postgresql+asyncpg://{self.postgres_user}:"
            f"{self.postgres_password}@{self.postgres_host}:"
            f"{self.postgres_port}/{self.postgres_db}"
        )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get settings singleton, creating it if needed.

    Returns:
        Settings: The application settings instance.
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def set_settings(settings: Settings) -> None:
    """Override settings (primarily for testing).

    Args:
        settings: The Settings instance to use.
    """
    global _settings
    _settings = settings


def reset_settings() -> None:
    """Reset settings to None (for test cleanup)."""
    global _settings
    _settings = None


def get_loglevel():
    loglevel = os.getenv("LOGLEVEL", "INFO")

    match loglevel:
        case "INFO":
            return logging.INFO
        case "WARNING":
            return logging.WARNING
        case "ERROR":
            return logging.ERROR
        case "CRITICAL":
            return logging.CRITICAL
        case "DEBUG":
            return logging.DEBUG
        case _:
            return logging.INFO
