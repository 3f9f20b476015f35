"""Tests for environment-driven settings."""

import logging

import pytest

from obsfly.config import Settings


@pytest.mark.core
class TestSettingsFromEnv:
    """Tests for Settings.from_env."""

    def test_defaults_without_environment(self) -> None:
        assert Settings.from_env({}) == Settings()

    def test_reads_prefixed_variables(self) -> None:
        settings = Settings.from_env(
            {
                "OBSFLY_DB_PATH": "/var/lib/obsfly/events.db",
                "OBSFLY_DEFAULT_MINUTES": "60",
                "OBSFLY_QUERY_TIMEOUT_SECONDS": "2.5",
                "OBSFLY_MAX_STACK_SAMPLES": "500",
                "OBSFLY_LOG_LEVEL": "debug",
                "OBSFLY_CAPTURE_LOGS": "true",
                "OBSFLY_LOG_ACCOUNT_ID": "9",
            }
        )
        assert settings.db_path == "/var/lib/obsfly/events.db"
        assert settings.default_minutes == 60
        assert settings.query_timeout_seconds == 2.5
        assert settings.max_stack_samples == 500
        assert settings.log_level == "DEBUG"
        assert settings.capture_logs is True
        assert settings.log_account_id == 9

    def test_invalid_values_fall_back_with_warning(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.WARNING, logger="obsfly.config"):
            settings = Settings.from_env(
                {
                    "OBSFLY_DEFAULT_MINUTES": "fifteen",
                    "OBSFLY_DEFAULT_PAGE_SIZE": "-1",
                    "OBSFLY_QUERY_TIMEOUT_SECONDS": "nan",
                    "OBSFLY_LOG_LEVEL": "LOUD",
                }
            )
        assert settings.default_minutes == 15
        assert settings.default_page_size == 20
        assert settings.query_timeout_seconds == 30.0
        assert settings.log_level == "INFO"
        assert "OBSFLY_DEFAULT_MINUTES" in caplog.text

    @pytest.mark.parametrize("raw", ["0", "no", "off", ""])
    def test_false_booleans(self, raw: str) -> None:
        assert Settings.from_env({"OBSFLY_CAPTURE_LOGS": raw}).capture_logs is False
