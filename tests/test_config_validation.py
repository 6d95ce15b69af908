"""Tests for configuration loading and validation."""

from __future__ import annotations

import importlib.util
from dataclasses import replace
from pathlib import Path

import pytest

CONFIG_PATH = Path(__file__).resolve().parents[1] / "app" / "config.py"


@pytest.fixture()
def real_config(monkeypatch):
    """Load app/config.py directly.

    conftest.py replaces ``app.config`` in sys.modules to keep .env files out
    of the test run, so the real module is loaded under a private name.
    """
    monkeypatch.setenv("EMAIL_QUEUE_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_configured")
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_configured")
    spec = importlib.util.spec_from_file_location("_subsflow_config_under_test", CONFIG_PATH)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class TestSettings:
    def test_queue_settings_read_environment(self, real_config) -> None:
        settings = real_config.Settings()
        assert settings.email_queue.max_attempts == 5
        assert settings.email_queue.backoff_base_seconds == 5
        assert settings.subscription_queue.backoff_cap_seconds == 600

    def test_settings_are_frozen(self, real_config) -> None:
        with pytest.raises(AttributeError):
            real_config.settings.app_name = "Other"


class TestValidateSettings:
    def test_no_warnings_when_configured(self, real_config, monkeypatch) -> None:
        monkeypatch.delenv("ENVIRONMENT", raising=False)
        assert real_config.validate_settings(real_config.Settings()) == []

    def test_missing_webhook_secret(self, real_config) -> None:
        s = replace(real_config.Settings(), stripe_webhook_secret="")
        warnings = real_config.validate_settings(s)
        assert any("STRIPE_WEBHOOK_SECRET" in w for w in warnings)

    def test_missing_api_key(self, real_config) -> None:
        s = replace(real_config.Settings(), stripe_secret_key="")
        warnings = real_config.validate_settings(s)
        assert any("STRIPE_SECRET_KEY" in w for w in warnings)

    def test_queue_without_attempts(self, real_config) -> None:
        settings = real_config.Settings()
        s = replace(
            settings,
            email_queue=replace(settings.email_queue, max_attempts=0),
        )
        warnings = real_config.validate_settings(s)
        assert any("max attempts" in w for w in warnings)

    def test_localhost_database_in_production(self, real_config, monkeypatch) -> None:
        monkeypatch.setenv("ENVIRONMENT", "production")
        s = replace(
            real_config.Settings(),
            database_url="postgresql+psycopg://app@localhost/subsflow",
        )
        warnings = real_config.validate_settings(s)
        assert any("localhost" in w for w in warnings)
