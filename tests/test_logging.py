"""Tests for structured logging configuration."""

import json
import logging
import sys

from community.app.core.logging import (
    ContextFilter,
    JSONFormatter,
    get_log_context,
    get_logger,
    get_logging_config,
)


def make_record(msg="Test message", **attrs) -> logging.LogRecord:
    record = logging.LogRecord(
        name="test",
        level=logging.INFO,
        pathname="test.py",
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in attrs.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_basic_json_format(self):
        data = json.loads(JSONFormatter().format(make_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "test"
        assert data["message"] == "Test message"
        assert "timestamp" in data
        assert data["source"]["file"] == "test.py"
        assert data["source"]["line"] == 1

    def test_context_fields_are_top_level(self):
        record = make_record(request_id="req-1", user_id="user-1", session_id="s-1", duration_ms=12.5)

        data = json.loads(JSONFormatter().format(record))

        assert data["request_id"] == "req-1"
        assert data["user_id"] == "user-1"
        assert data["session_id"] == "s-1"
        assert data["duration_ms"] == 12.5

    def test_unset_context_fields_are_omitted(self):
        record = make_record()
        ContextFilter().filter(record)

        data = json.loads(JSONFormatter().format(record))

        assert "request_id" not in data
        assert "extra" not in data

    def test_other_extra_fields_are_grouped(self):
        data = json.loads(JSONFormatter().format(make_record(wait_time_ms=500)))

        assert data["extra"] == {"wait_time_ms": 500}

    def test_exception_is_included(self):
        try:
            raise ValueError("bad")
        except ValueError:
            record = make_record(exc_info=sys.exc_info())

        data = json.loads(JSONFormatter().format(record))

        assert any("ValueError: bad" in line for line in data["exception"])


class TestContextFilter:
    def test_adds_defaults(self):
        record = make_record()

        assert ContextFilter().filter(record) is True
        assert record.request_id is None
        assert record.user_id is None
        assert record.session_id is None

    def test_keeps_existing_values(self):
        record = make_record(user_id="user-9")
        ContextFilter().filter(record)

        assert record.user_id == "user-9"


class TestLoggingConfig:
    def test_json_format_uses_json_formatter(self, monkeypatch):
        monkeypatch.setattr("community.app.core.logging.settings.log_format", "json")

        config = get_logging_config()

        assert config["handlers"]["console"]["formatter"] == "json"
        assert "json" in config["formatters"]

    def test_text_format_uses_standard_formatter(self, monkeypatch):
        monkeypatch.setattr("community.app.core.logging.settings.log_format", "text")

        config = get_logging_config()

        assert config["handlers"]["console"]["formatter"] == "standard"
        assert config["loggers"]["community"]["propagate"] is False


def test_get_logger_and_context():
    assert get_logger("community.test").name == "community.test"

    context = get_log_context(request_id="r", user_id="u", extra_field=1)

    assert context["request_id"] == "r"
    assert context["user_id"] == "u"
    assert "session_id" not in context
    assert context["extra_field"] == 1
