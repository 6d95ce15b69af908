from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from celery.schedules import crontab

from app.services import scheduler_config


@pytest.fixture
def session_mock() -> MagicMock:
    return MagicMock(name="scheduler_session")


@pytest.fixture
def clear_scheduler_env(monkeypatch: pytest.MonkeyPatch) -> None:
    keys = (
        "CELERY_BROKER_URL",
        "CELERY_RESULT_BACKEND",
        "CELERY_TIMEZONE",
        "CELERY_BEAT_MAX_LOOP_INTERVAL",
        "CELERY_BEAT_REFRESH_SECONDS",
    )
    for key in keys:
        monkeypatch.delenv(key, raising=False)


def _recurring(schedule_id: str, cron: str) -> SimpleNamespace:
    return SimpleNamespace(schedule_id=schedule_id, cron=cron, enabled=True)


def test_get_celery_config_defaults_to_redis(clear_scheduler_env: None) -> None:
    config = scheduler_config.get_celery_config()

    assert config["broker_url"] == "redis://localhost:6379/0"
    assert config["result_backend"] == "redis://localhost:6379/0"
    assert config["timezone"] == "UTC"
    assert config["task_acks_late"] is True
    assert config["task_default_queue"] == "subscription"
    assert config["beat_max_loop_interval"] == 5
    assert config["beat_refresh_seconds"] == 30


def test_get_celery_config_reads_environment(
    clear_scheduler_env: None, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("CELERY_BROKER_URL", "redis://broker.example:6379/2")
    monkeypatch.setenv("CELERY_RESULT_BACKEND", "redis://backend.example:6379/3")
    monkeypatch.setenv("CELERY_TIMEZONE", "Africa/Lagos")
    monkeypatch.setenv("CELERY_BEAT_MAX_LOOP_INTERVAL", "11")
    monkeypatch.setenv("CELERY_BEAT_REFRESH_SECONDS", "not-a-number")

    config = scheduler_config.get_celery_config()

    assert config["broker_url"] == "redis://broker.example:6379/2"
    assert config["result_backend"] == "redis://backend.example:6379/3"
    assert config["timezone"] == "Africa/Lagos"
    assert config["beat_max_loop_interval"] == 11
    assert config["beat_refresh_seconds"] == 30


def test_parse_cron_builds_crontab() -> None:
    schedule = scheduler_config.parse_cron("*/5 9 * * 1")

    assert isinstance(schedule, crontab)
    assert schedule.minute == {0, 5, 10, 15, 20, 25, 30, 35, 40, 45, 50, 55}
    assert schedule.hour == {9}
    assert schedule.day_of_week == {1}


@pytest.mark.parametrize("expression", ["", "* * * *", "0 * * * * *"])
def test_parse_cron_rejects_wrong_field_count(expression: str) -> None:
    with pytest.raises(ValueError, match="Expected 5 cron fields"):
        scheduler_config.parse_cron(expression)


def test_build_beat_schedule_builds_cron_entries(session_mock: MagicMock) -> None:
    query = session_mock.query.return_value.filter.return_value
    query.all.return_value = [
        _recurring("check-expiry-hourly", "0 * * * *"),
        _recurring("broken", "every hour"),
    ]

    with patch.object(scheduler_config, "SessionLocal", return_value=session_mock):
        schedule = scheduler_config.build_beat_schedule()

    assert list(schedule) == ["check-expiry-hourly"]
    entry = schedule["check-expiry-hourly"]
    assert entry["task"] == scheduler_config.RUN_RECURRING_TASK
    assert entry["args"] == ["check-expiry-hourly"]
    assert entry["options"] == {"queue": "subscription"}
    assert isinstance(entry["schedule"], crontab)
    session_mock.close.assert_called_once()


def test_build_beat_schedule_returns_empty_on_exception(session_mock: MagicMock) -> None:
    session_mock.query.side_effect = RuntimeError("db down")

    with patch.object(scheduler_config, "SessionLocal", return_value=session_mock):
        assert scheduler_config.build_beat_schedule() == {}

    session_mock.close.assert_called_once()
