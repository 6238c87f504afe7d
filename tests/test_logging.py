"""
Tests for privacy-compliant logging utilities.

Tests verify that:
1. Log format is valid JSON
2. Customer phones, names and message bodies never reach log records
3. Correlation IDs are propagated
4. Credential-looking fields are dropped
"""

import json
import logging
import sys
from decimal import Decimal

from chatorder.utils.logging import (
    JSONFormatter,
    filter_sensitive,
    get_logger,
    log_api_call,
    log_error,
    log_event,
    setup_logging,
)


def make_record(msg: str = "Group flushed", level: int = logging.INFO, exc_info=None) -> logging.LogRecord:
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
    """Test the JSON formatter for structured logging."""

    def test_json_formatter_basic(self):
        """JSONFormatter produces one JSON object with the standard keys."""
        log_data = json.loads(JSONFormatter().format(make_record()))

        assert log_data["level"] == "INFO"
        assert log_data["logger"] == "test"
        assert log_data["message"] == "Group flushed"
        assert "timestamp" in log_data

    def test_json_formatter_with_correlation_id(self):
        record = make_record()
        record.correlation_id = "req-123"

        log_data = json.loads(JSONFormatter().format(record))

        assert log_data["correlation_id"] == "req-123"

    def test_json_formatter_with_extra_fields(self):
        """Fields passed via extra, including non-JSON types, are serialized."""
        record = make_record()
        record.group_id = "7f0c"
        record.total = Decimal("108000.00")

        log_data = json.loads(JSONFormatter().format(record))

        assert log_data["group_id"] == "7f0c"
        assert log_data["total"] == "108000.00"

    def test_json_formatter_with_exception(self):
        try:
            raise ValueError("agent unreachable")
        except ValueError:
            record = make_record("Flush failed", logging.ERROR, sys.exc_info())

        log_data = json.loads(JSONFormatter().format(record))

        assert "ValueError: agent unreachable" in log_data["exception"]


class TestLogEvent:
    """Test the log_event function for PII filtering."""

    def test_log_event_filters_pii_fields(self, caplog):
        caplog.set_level(logging.INFO)

        log_event(
            "Manual reply detected",
            chat_id="chat-1",
            phone="573001234567",
            customer_name="Ana",
            content="Te llamo en un momento",
            agent_disabled=True,
        )

        (record,) = caplog.records
        assert not hasattr(record, "phone")
        assert not hasattr(record, "customer_name")
        assert not hasattr(record, "content")
        assert record.chat_id == "chat-1"
        assert record.agent_disabled is True

    def test_log_event_filters_sensitive_field_names(self, caplog):
        caplog.set_level(logging.INFO)

        log_event(
            "Channel resolved",
            tenant_id="tenant-1",
            access_token="EAAG...",
            api_key="bsp-key",
            verify_token="verify-me",
        )

        (record,) = caplog.records
        assert not hasattr(record, "access_token")
        assert not hasattr(record, "api_key")
        assert not hasattr(record, "verify_token")
        assert record.tenant_id == "tenant-1"

    def test_log_event_with_correlation_id(self, caplog):
        caplog.set_level(logging.INFO)

        log_event("Webhook received", correlation_id="abc-123", tenant_id="tenant-1")

        (record,) = caplog.records
        assert record.correlation_id == "abc-123"

    def test_log_event_respects_log_level(self, caplog):
        caplog.set_level(logging.DEBUG)

        log_event("Debug message", level="DEBUG")
        log_event("Warning message", level="WARNING")
        log_event("Unknown level", level="LOUD")

        assert [r.levelname for r in caplog.records] == ["DEBUG", "WARNING", "INFO"]


class TestLogApiCall:
    """Test the log_api_call function."""

    def test_log_api_call_basic(self, caplog):
        caplog.set_level(logging.INFO)

        log_api_call(
            service="bsp",
            endpoint="/message/sendText/tienda",
            method="POST",
            status_code=201,
            duration_ms=245.456,
        )

        (record,) = caplog.records
        assert record.service == "bsp"
        assert record.endpoint == "/message/sendText/tienda"
        assert record.status_code == 201
        assert record.duration_ms == 245.46

    def test_log_api_call_with_error(self, caplog):
        caplog.set_level(logging.INFO)

        log_api_call(
            service="agent",
            endpoint="agent_webhook",
            method="POST",
            status_code=0,
            duration_ms=30000.0,
            error_type="ReadTimeout",
            correlation_id="xyz-789",
        )

        (record,) = caplog.records
        assert record.error_type == "ReadTimeout"
        assert record.correlation_id == "xyz-789"


class TestLogError:
    def test_context_is_filtered(self, caplog):
        caplog.set_level(logging.ERROR)
        logger = get_logger("chatorder.test")

        try:
            raise RuntimeError("insert failed")
        except RuntimeError as e:
            log_error(logger, e, {"tenant_id": "tenant-1", "customer_phone": "573001234567"})

        (record,) = caplog.records
        assert record.error_type == "RuntimeError"
        assert record.context == {"tenant_id": "tenant-1"}
        assert record.exc_info is not None


class TestFilterSensitive:
    def test_keeps_identifiers(self):
        filtered = filter_sensitive(
            {"group_id": "g", "message_id": "m", "Phone": "1", "message": "hola", "apiKey": "k"}
        )
        assert filtered == {"group_id": "g", "message_id": "m"}


class TestSetupLogging:
    """Test the setup_logging function."""

    def test_setup_logging_configures_root_logger(self):
        setup_logging(level="DEBUG")

        root_logger = logging.getLogger()
        assert root_logger.level == logging.DEBUG
        assert isinstance(root_logger.handlers[0].formatter, JSONFormatter)
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_get_logger_returns_logger(self):
        logger = get_logger("test")

        assert isinstance(logger, logging.Logger)
        assert logger.name == "test"
