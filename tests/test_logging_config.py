"""Tests for structured logging formatters."""

import json
import logging

import pytest

from tierflow.logging_config import (
    ContextAwareFormatter,
    ContextAwareJsonFormatter,
    set_correlation_id,
    set_deliberation_id,
    setup_logging,
)


@pytest.fixture(autouse=True)
def clear_context():
    set_correlation_id(None)
    set_deliberation_id(None)
    yield
    set_correlation_id(None)
    set_deliberation_id(None)


def make_record(message="Tier %d advanced", *args):
    return logging.LogRecord("tierflow.tiers", logging.INFO, __file__, 1, message, args or (2,), None)


class TestFormatters:
    """Tests for the context-aware formatters."""

    def test_human_readable_prefix(self):
        """Correlation and deliberation IDs prefix the message."""
        set_correlation_id("abcdef1234567890")
        set_deliberation_id(42)
        formatter = ContextAwareFormatter(fmt="%(message)s")

        assert formatter.format(make_record()) == "[abcdef12] [delib:42] Tier 2 advanced"

    def test_original_record_untouched(self):
        """Formatting works on a copy of the record."""
        set_deliberation_id(7)
        record = make_record()
        ContextAwareFormatter(fmt="%(message)s").format(record)
        assert record.msg == "Tier %d advanced"

    def test_json_fields(self):
        """JSON output carries level, logger and the bound deliberation."""
        set_deliberation_id(42)
        formatter = ContextAwareJsonFormatter(fmt="%(timestamp)s %(level)s %(logger)s %(message)s")

        payload = json.loads(formatter.format(make_record()))

        assert payload["message"] == "Tier 2 advanced"
        assert payload["level"] == "INFO"
        assert payload["logger"] == "tierflow.tiers"
        assert payload["deliberation_id"] == 42
        assert "correlation_id" not in payload

    def test_no_context_leaves_message_alone(self):
        formatter = ContextAwareFormatter(fmt="%(message)s")
        assert formatter.format(make_record()) == "Tier 2 advanced"


class TestSetupLogging:
    """Tests for setup_logging."""

    @pytest.fixture(autouse=True)
    def restore_root(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        root.handlers[:] = handlers
        root.setLevel(level)

    def test_json_handler(self):
        """LOG_FORMAT=json installs the JSON formatter on a single handler."""
        setup_logging(level="debug", log_format="json")

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, ContextAwareJsonFormatter)

    def test_text_from_environment(self, monkeypatch):
        monkeypatch.setenv("LOG_FORMAT", "text")
        monkeypatch.setenv("LOG_LEVEL", "WARNING")

        setup_logging()

        root = logging.getLogger()
        assert root.level == logging.WARNING
        assert isinstance(root.handlers[0].formatter, ContextAwareFormatter)
