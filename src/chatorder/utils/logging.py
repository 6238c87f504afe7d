"""
Structured JSON logging for the chatorder service.

Every log line is a single JSON object so webhook traffic, buffer flushes and
agent calls can be correlated by tenant, chat and group ids in production.
"""

import json
import logging
import sys
from typing import Any

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RECORD_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "thread",
        "threadName",
        "taskName",
        "exc_info",
        "exc_text",
        "stack_info",
        "correlation_id",
    }
)

# Keys never written by log_event: customer PII and message bodies.
PII_FIELDS = frozenset(
    {
        "phone",
        "sender_phone",
        "customer_phone",
        "recipient_phone",
        "push_name",
        "display_name",
        "customer_name",
        "name",
        "content",
        "caption",
        "message",
        "message_text",
        "text",
        "body",
        "email",
        "address",
    }
)

SENSITIVE_SUBSTRINGS = ("password", "token", "secret", "key", "credential")


class JSONFormatter(logging.Formatter):
    """
    Format log records as JSON objects.

    Output carries timestamp, level, logger name and message, followed by the
    correlation id (when present) and every field passed via ``extra``.
    """

    def format(self, record: logging.LogRecord) -> str:
        """
        Format a log record as a JSON string.

        Args:
            record: The log record to format

        Returns:
            JSON-formatted string representation of the log record
        """
        log_data: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if hasattr(record, "correlation_id"):
            log_data["correlation_id"] = record.correlation_id

        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # default=str keeps UUIDs, datetimes and Decimals serializable
        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO") -> None:
    """
    Configure the root logger with a JSON console handler.

    Args:
        level: The logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
               Unknown names fall back to INFO.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.setFormatter(JSONFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    # httpx logs every request at INFO, including URLs carrying media tokens
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance with the specified name.

    Args:
        name: The name for the logger, typically __name__ of the calling module

    Returns:
        A configured logger instance

    Example:
        >>> logger = get_logger(__name__)
        >>> logger.info("Group flushed", extra={"group_id": "7f0c..."})
    """
    return logging.getLogger(name)


def log_api_call(
    service: str,
    endpoint: str,
    method: str,
    status_code: int,
    duration_ms: float,
    correlation_id: str | None = None,
    error_type: str | None = None,
) -> None:
    """
    Log an outbound API call with metadata only (no bodies).

    Args:
        service: API service name ("meta", "bsp", "agent", "commerce", ...)
        endpoint: Endpoint path, without query strings or tokens
        method: HTTP method
        status_code: HTTP status code, 0 when no response was received
        duration_ms: Request duration in milliseconds
        correlation_id: Request correlation ID for tracing
        error_type: Exception type name if the call failed
    """
    logger = get_logger(__name__)
    extra_data: dict[str, Any] = {
        "service": service,
        "endpoint": endpoint,
        "method": method,
        "status_code": status_code,
        "duration_ms": round(duration_ms, 2),
    }

    if correlation_id:
        extra_data["correlation_id"] = correlation_id

    if error_type:
        extra_data["error_type"] = error_type

    logger.info(f"API call to {service}", extra=extra_data)


def filter_sensitive(metadata: dict[str, Any]) -> dict[str, Any]:
    """
    Drop PII and secret-looking keys from a metadata dict.

    Args:
        metadata: Arbitrary key/value pairs destined for a log line

    Returns:
        A new dict without customer PII, message bodies or credentials
    """
    filtered = {}
    for key, value in metadata.items():
        lowered = key.lower()
        if lowered in PII_FIELDS:
            continue
        if any(substring in lowered for substring in SENSITIVE_SUBSTRINGS):
            continue
        filtered[key] = value
    return filtered


def log_event(
    event: str,
    level: str = "INFO",
    correlation_id: str | None = None,
    **metadata: Any,
) -> None:
    """
    Log a pipeline event with privacy-compliant metadata.

    Phone numbers, names, message content and credentials are removed before
    the record is emitted, so callers can pass whole context dicts.

    Args:
        event: Event description
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        correlation_id: Request correlation ID
        **metadata: Additional metadata (PII fields will be filtered)

    Example:
        >>> log_event(
        ...     "Manual reply detected",
        ...     tenant_id="0b6f...",
        ...     chat_id="91aa...",
        ...     phone="5215512345678",  # dropped
        ... )
    """
    filtered_metadata = filter_sensitive(metadata)

    if correlation_id:
        filtered_metadata["correlation_id"] = correlation_id

    logger = get_logger(__name__)
    log_level = getattr(logging, level.upper(), logging.INFO)
    logger.log(log_level, event, extra=filtered_metadata)


def log_error(
    logger: logging.Logger,
    error: Exception,
    context: dict[str, Any],
) -> None:
    """
    Log an error with contextual information and stack trace.

    Args:
        logger: The logger instance to use
        error: The exception that occurred
        context: Additional context; PII keys are filtered out
    """
    logger.error(
        f"Error occurred: {str(error)}",
        extra={
            "error_type": type(error).__name__,
            "error_message": str(error),
            "context": filter_sensitive(context),
        },
        exc_info=True,
    )
