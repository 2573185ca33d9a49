"""Tests for the settings layer."""

import pytest
from autopilot_common.config import (
    AppSettings,
    DatabaseSettings,
    DispatchSettings,
    IngestionSettings,
    TriggerSettings,
    get_settings,
    get_trigger_settings,
)
from pydantic import ValidationError


class TestDatabaseSettings:
    def test_explicit_url_wins(self):
        settings = DatabaseSettings(DATABASE_URL="sqlite+aiosqlite:///./triggers.db")

        assert settings.url == "sqlite+aiosqlite:///./triggers.db"
        assert settings.is_sqlite is True

    def test_postgres_url_from_parts(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        settings = DatabaseSettings(
            DATABASE_URL=None,
            POSTGRES_USER="svc",
            POSTGRES_PASSWORD="pw",
            POSTGRES_HOST="pg",
            POSTGRES_PORT="6543",
            POSTGRES_DB="triggers",
        )

        assert settings.url == "postgresql+asyncpg://svc:pw@pg:6543/triggers"
        assert settings.is_sqlite is False


class TestTriggerSettings:
    def test_defaults(self):
        settings = TriggerSettings()

        assert settings.DEFAULT_TIMEZONE == "UTC"
        assert settings.WEBHOOK_BASE_URL == "/v1/webhooks"
        assert settings.WEBHOOK_SIGNATURE_HEADER == "x-webhook-signature"
        assert settings.WEBHOOK_TIMESTAMP_TOLERANCE_SECONDS == 300

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("TRIGGER_DEFAULT_TIMEZONE", "Europe/Berlin")
        monkeypatch.setenv("TRIGGER_SNAPSHOT_MAX_LIST_ITEMS", "10")

        settings = TriggerSettings()

        assert settings.DEFAULT_TIMEZONE == "Europe/Berlin"
        assert settings.SNAPSHOT_MAX_LIST_ITEMS == 10

    def test_getter_is_cached(self):
        assert get_trigger_settings() is get_trigger_settings()


class TestIngestionSettings:
    def test_defaults(self):
        settings = IngestionSettings()

        assert settings.MAX_MESSAGES_PER_NOTIFICATION == 50
        assert settings.BUSINESS_DAYS == [0, 1, 2, 3, 4]
        assert settings.GMAIL_PUSH_VERIFICATION_TOKEN is None

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("INGESTION_GMAIL_PUSH_VERIFICATION_TOKEN", "from-env")
        monkeypatch.setenv("INGESTION_MESSAGE_FETCH_CONCURRENCY", "2")

        settings = IngestionSettings()

        assert settings.GMAIL_PUSH_VERIFICATION_TOKEN == "from-env"
        assert settings.MESSAGE_FETCH_CONCURRENCY == 2

    def test_business_hours_are_bounded(self):
        with pytest.raises(ValidationError):
            IngestionSettings(BUSINESS_HOURS_START=24)


class TestDispatchSettings:
    def test_defaults(self):
        settings = DispatchSettings()

        assert settings.TASK_QUEUE == "agent-execution-queue"
        assert settings.WORKFLOW_NAME == "AgentExecutionWorkflow"

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("DISPATCH_TEMPORAL_HOST", "temporal:7233")

        assert DispatchSettings().TEMPORAL_HOST == "temporal:7233"


class TestSettingsContainer:
    def test_groups_every_concern(self):
        get_settings.cache_clear()
        try:
            settings = get_settings()

            assert isinstance(settings.app, AppSettings)
            assert isinstance(settings.triggers, TriggerSettings)
            assert isinstance(settings.ingestion, IngestionSettings)
            assert isinstance(settings.dispatch, DispatchSettings)
            assert get_settings() is settings
        finally:
            get_settings.cache_clear()

    def test_app_defaults(self):
        settings = AppSettings()

        assert settings.APP_NAME == "Autopilot Trigger Service"
        assert settings.LOG_LEVEL == "INFO"
