"""Tests for settings and structured logging."""

import json
import logging

import pytest

from relay_engine.common.config import RelaySettings
from relay_engine.common.logging import JSONFormatter


class TestSettings:
    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("RELAY_DEFAULT_RETRY_COUNT", "5")
        monkeypatch.setenv("RELAY_MAX_DELAY_SECONDS", "60")
        settings = RelaySettings()
        assert settings.default_retry_count == 5
        assert settings.max_delay_seconds == 60

    def test_default_db_rejected_in_production(self, monkeypatch):
        monkeypatch.delenv("RELAY_DB_URL", raising=False)
        settings = RelaySettings(environment="production")
        with pytest.raises(RuntimeError):
            settings.validate_for_production()

    def test_default_db_warns_in_development(self, monkeypatch):
        monkeypatch.delenv("RELAY_DB_URL", raising=False)
        monkeypatch.delenv("RELAY_ENVIRONMENT", raising=False)
        with pytest.warns(UserWarning):
            RelaySettings().validate_for_production()

    def test_custom_db_accepted(self):
        RelaySettings(
            environment="production", db_url="postgresql+asyncpg://relay@db/relay",
        ).validate_for_production()


class TestJSONFormatter:
    def test_includes_execution_context(self):
        record = logging.LogRecord(
            "relay_engine.executions.engine", logging.INFO, __file__, 1,
            "Step %d succeeded", (2,), None,
        )
        record.execution_id = "exec-1"
        record.step_order = 2
        entry = json.loads(JSONFormatter().format(record))
        assert entry["message"] == "Step 2 succeeded"
        assert entry["level"] == "INFO"
        assert entry["execution_id"] == "exec-1"
        assert entry["step_order"] == 2
        assert "webhook_id" not in entry
