import pytest

from cicero.main.config import Settings, get_settings, reset_settings, set_settings

BASE = dict(
    postgres_user="u",
    postgres_host="localhost",
    postgres_password="p",
    postgres_port=5432,
    postgres_db="db",
    redis_host="localhost",
    redis_port=6379,
)


def test_defaults_match_documented_values():
    settings = Settings(**BASE)

    assert settings.fetch_concurrency == 4
    assert settings.fetch_run_budget_seconds == 1800
    assert settings.fetch_intake_buffer_seconds == 20
    assert settings.fetch_lock_key == "cron:dirfetch:sosmed"
    assert settings.fetch_lock_ttl_seconds == 2100
    assert settings.fetch_lock_refresh_interval_seconds == 600
    assert settings.outbox_batch_size == 20
    assert settings.outbox_base_delay_seconds == 30
    assert settings.outbox_max_backoff_seconds == 3600
    assert settings.notification_max_attempts == 5
    assert settings.notify_interval_seconds == 3600
    assert settings.database_url == "postgresql+asyncpg://u:p@localhost:5432/db"


def test_extended_client_ids_are_normalized():
    settings = Settings(**BASE, extended_post_fetch_client_ids=[" bidhumas", "DITINTELKAM ", ""])

    assert settings.extended_post_fetch_client_ids == ["BIDHUMAS", "DITINTELKAM"]


@pytest.mark.parametrize(
    "overrides",
    [
        {"fetch_concurrency": 0},
        {"fetch_intake_buffer_seconds": 1800},
        {"outbox_batch_size": 0},
        {"notification_max_attempts": 0},
        {"outbox_base_delay_seconds": 60, "outbox_max_backoff_seconds": 30},
        {"notify_window_start_hour": 23, "notify_window_end_hour": 6},
        {"deletion_ratio_threshold": 1.5},
        {"fetch_lock_refresh_interval_seconds": 0},
        {"fetch_lock_refresh_interval_seconds": 2100},
    ],
)
def test_invalid_settings_exit(overrides):
    with pytest.raises(SystemExit):
        Settings(**BASE, **overrides)


def test_set_and_reset_settings(test_settings):
    set_settings(test_settings)
    assert get_settings() is test_settings

    reset_settings()
    set_settings(Settings(**BASE))
    assert get_settings() is not test_settings
