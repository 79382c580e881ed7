"""Tests for structured logging configuration."""

import json
import logging
import sys
from unittest.mock import patch

from ratekeeper.app.core.logging import (
    ContextFilter,
    JSONFormatter,
    get_log_context,
    get_logger,
    get_logging_config,
    setup_logging,
)


def make_record(msg="Test message", level=logging.INFO, exc_info=None):
    return logging.LogRecord(
        name="test",
        level=level,
        pathname="test.py",
        lineno=1,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )


class TestJSONFormatter:
    """Test JSON formatter for structured logging."""

    def test_basic_json_format(self):
        formatter = JSONFormatter()
        data = json.loads(formatter.format(make_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "test"
        assert data["message"] == "Test message"
        assert "timestamp" in data
        assert data["source"]["file"] == "test.py"
        assert data["source"]["line"] == 1

    def test_json_format_with_context(self):
        """Rate limit context fields are promoted to the top level."""
        formatter = JSONFormatter()
        record = make_record("Rate limit exceeded")
        record.scope = "auth"
        record.key_hash = "9f86d081884c7d65"
        record.error_kind = "timeout"

        data = json.loads(formatter.format(record))

        assert data["scope"] == "auth"
        assert data["key_hash"] == "9f86d081884c7d65"
        assert data["error_kind"] == "timeout"
        assert "extra" not in data

    def test_json_format_skips_empty_context(self):
        formatter = JSONFormatter()
        record = make_record()
        ContextFilter().filter(record)

        data = json.loads(formatter.format(record))
        assert "scope" not in data
        assert "request_id" not in data

    def test_json_format_with_extra_fields(self):
        formatter = JSONFormatter()
        record = make_record("Custom event")
        record.limit = 5
        record.retry_after_ms = 59990

        data = json.loads(formatter.format(record))

        assert data["extra"]["limit"] == 5
        assert data["extra"]["retry_after_ms"] == 59990

    def test_json_format_with_exception(self):
        formatter = JSONFormatter()
        try:
            raise ValueError("Test error")
        except ValueError:
            record = make_record("Error occurred", logging.ERROR, sys.exc_info())

        data = json.loads(formatter.format(record))

        exception_text = "".join(data["exception"])
        assert "ValueError" in exception_text
        assert "Test error" in exception_text

    def test_json_format_unicode(self):
        formatter = JSONFormatter()
        data = json.loads(formatter.format(make_record("Zu viele Anfragen: Grüße 🌍")))
        assert "Grüße 🌍" in data["message"]


class TestContextFilter:
    """Test context filter for adding default fields."""

    def test_adds_default_fields(self):
        record = make_record()
        assert ContextFilter().filter(record) is True
        for field in ("request_id", "scope", "key_hash", "path", "method", "status_code", "error_kind"):
            assert hasattr(record, field)

    def test_preserves_existing_values(self):
        record = make_record()
        record.scope = "admin"
        ContextFilter().filter(record)
        assert record.scope == "admin"


class TestGetLoggingConfig:
    """Test logging configuration generation."""

    def test_default_text_format(self):
        with patch("ratekeeper.app.core.logging.settings") as mock_settings:
            mock_settings.log_format = "text"
            mock_settings.log_level = "INFO"
            config = get_logging_config()

        assert "json" not in config["formatters"]
        assert config["handlers"]["console"]["formatter"] == "standard"

    def test_structured_format(self):
        with patch("ratekeeper.app.core.logging.settings") as mock_settings:
            mock_settings.log_format = "structured"
            mock_settings.log_level = "debug"
            config = get_logging_config()

        assert config["handlers"]["console"]["formatter"] == "structured"
        assert config["handlers"]["console"]["level"] == "DEBUG"

    def test_json_format(self):
        with patch("ratekeeper.app.core.logging.settings") as mock_settings:
            mock_settings.log_format = "json"
            mock_settings.log_level = "WARNING"
            config = get_logging_config()

        assert config["handlers"]["console"]["formatter"] == "json"
        assert config["loggers"]["ratekeeper"]["level"] == "WARNING"

    def test_context_filter_added(self):
        config = get_logging_config()
        assert "context" in config["handlers"]["console"]["filters"]
        assert "context" in config["handlers"]["error_console"]["filters"]


class TestGetLogContext:

    def test_context_filters_none(self):
        context = get_log_context(scope="auth", key_hash=None, request_id="req-1")
        assert context == {"scope": "auth", "request_id": "req-1"}

    def test_context_with_extra(self):
        context = get_log_context(scope="api", limit=5)
        assert context["limit"] == 5

    def test_default_logger_name(self):
        assert get_logger().name == "ratekeeper"


class TestIntegration:

    def test_json_logging_output(self, capsys):
        with patch("ratekeeper.app.core.logging.settings") as mock_settings:
            mock_settings.log_format = "json"
            mock_settings.log_level = "INFO"

            setup_logging()
            logger = get_logger("ratekeeper.test")
            logger.warning(
                "Rate limit exceeded",
                extra=get_log_context(scope="auth", key_hash="abc", limit=5),
            )

            output = capsys.readouterr().out

        data = json.loads(output.strip().splitlines()[-1])
        assert data["level"] == "WARNING"
        assert data["logger"] == "ratekeeper.test"
        assert data["scope"] == "auth"
        assert data["key_hash"] == "abc"
        assert data["extra"]["limit"] == 5
