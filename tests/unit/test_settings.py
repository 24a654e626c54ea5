"""
Settings and Logging Tests
==========================
"""

import pytest
from pydantic import ValidationError

from copilot_stream.config import settings as settings_module
from copilot_stream.config.logging import (
    get_logging_config,
    is_development_logging,
)
from copilot_stream.config.settings import StreamSettings, get_settings, reload_settings
from copilot_stream.sse.models import ConnectionOptions


class TestStreamSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("COPILOT_STREAM_MAX_RETRIES", raising=False)
        settings = StreamSettings(_env_file=None)

        assert settings.environment == "development"
        assert settings.max_retries == 5
        assert settings.initial_retry_delay_ms == 1000
        assert settings.backoff_multiplier == 2.0
        assert settings.utility_max_attempts == 3
        assert settings.utility_backoff_multiplier == 1.5
        assert settings.utility_max_delay_ms == 8000
        assert settings.tool_call_history_limit == 50
        assert settings.default_rate_limit == 30
        assert not settings.is_production

    def test_environment_variables(self, monkeypatch):
        monkeypatch.setenv("COPILOT_STREAM_MAX_RETRIES", "7")
        monkeypatch.setenv("COPILOT_STREAM_ENVIRONMENT", "production")

        settings = StreamSettings(_env_file=None)

        assert settings.max_retries == 7
        assert settings.is_production

    def test_log_level_normalised(self):
        assert StreamSettings(_env_file=None, log_level="debug").log_level == "DEBUG"

    @pytest.mark.parametrize(
        "field, value",
        [
            ("environment", "staging"),
            ("log_level", "LOUD"),
            ("max_retries", -1),
            ("backoff_multiplier", 0.5),
            ("tool_call_history_limit", 0),
        ],
    )
    def test_invalid_values(self, field, value):
        with pytest.raises(ValidationError):
            StreamSettings(_env_file=None, **{field: value})

    def test_get_settings_returns_override(self, test_settings):
        assert get_settings() is test_settings

    def test_reload_settings_builds_new_instance(self, test_settings):
        reloaded = reload_settings()

        assert reloaded is not test_settings
        assert settings_module.settings is reloaded


class TestConnectionOptionsFromSettings:
    def test_retry_policy_from_settings(self, test_settings):
        options = ConnectionOptions.from_settings(test_settings, url="/api/copilot")

        assert options.max_retries == test_settings.max_retries
        assert options.initial_retry_delay == test_settings.initial_retry_delay_ms
        assert options.is_relative

    def test_overrides_win(self, test_settings):
        options = ConnectionOptions.from_settings(
            test_settings, url="https://agent.example.com/stream", max_retries=1, headers=None
        )

        assert options.max_retries == 1
        assert options.headers == {}
        assert not options.is_relative

    @pytest.mark.parametrize("url", ["", "ftp://example.com", "api/copilot"])
    def test_rejected_urls(self, url):
        with pytest.raises(ValidationError):
            ConnectionOptions(url=url)

    def test_unknown_option_rejected(self):
        with pytest.raises(ValidationError):
            ConnectionOptions(url="/x", retries=3)


class TestLoggingConfig:
    def test_console_format_outside_production(self, test_settings):
        config = get_logging_config(test_settings)

        assert config["handlers"]["console"]["formatter"] == "standard"
        assert config["loggers"]["copilot_stream"]["level"] == "DEBUG"

    def test_json_format_in_production(self):
        settings = StreamSettings(_env_file=None, environment="production")

        config = get_logging_config(settings)

        assert config["handlers"]["console"]["formatter"] == "json"
        assert config["formatters"]["json"]["()"] == "pythonjsonlogger.jsonlogger.JsonFormatter"

    def test_development_logging_flag(self, test_settings):
        assert is_development_logging(test_settings)
        assert not is_development_logging(StreamSettings(_env_file=None, environment="production"))

