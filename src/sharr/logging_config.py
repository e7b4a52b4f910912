"""
Structured logging configuration for SHARR runbooks.

Every log line is a JSON object carrying the execution ID of the runbook
run that emitted it, so the steps of one remediation can be followed across
the registry, the engine, the AWS actions and the ticketing bridge.

Log Format:
    {
        "timestamp": "2025-11-14T10:30:00.123Z",
        "level": "INFO",
        "logger": "sharr.runbook",
        "execution_id": "abc123...",
        "message": "Step succeeded",
        "control_id": "EC2.19",
        "step": "assess",
        ...additional context...
    }

Context fields whose name looks like a credential (token, password,
secret, authorization) are replaced with a redaction marker before the
entry is serialized.

Usage:
    from sharr.logging_config import setup_logging, get_logger, log_with_context

    setup_logging(log_level="INFO")
    logger = get_logger(__name__)
    log_with_context(logger, "info", "Resolving runbook", control_id="EC2.19")
"""

import json
import logging
import sys
import uuid
from collections.abc import Callable
from contextvars import ContextVar
from datetime import UTC, datetime
from types import TracebackType
from typing import override

_execution_id: ContextVar[str | None] = ContextVar("execution_id", default=None)

REDACTED = "***REDACTED***"

_SENSITIVE_MARKERS = ("token", "password", "secret", "authorization", "credential")

# Attributes every LogRecord carries; anything else came in through ``extra``
_STANDARD_ATTRS = frozenset(
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
        "exc_info",
        "exc_text",
        "stack_info",
        "taskName",
    }
)


def is_sensitive_key(key: str) -> bool:
    """Return True when a context key names credential material."""
    lowered = key.lower()
    return any(marker in lowered for marker in _SENSITIVE_MARKERS)


class StructuredFormatter(logging.Formatter):
    """
    Formatter that outputs one JSON object per record.

    Standard Fields:
        - timestamp: ISO 8601 timestamp in UTC
        - level: Log level
        - logger: Logger name
        - execution_id: Runbook execution ID (None outside a run)
        - message: Human-readable log message
        - exc_info: Exception information if present

    Extra fields from the record are included unless they are credential
    shaped, in which case their value is redacted.
    """

    @override
    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, object] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "execution_id": _execution_id.get(),
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_entry["exc_info"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _STANDARD_ATTRS or key.startswith("_"):
                continue
            log_entry[key] = REDACTED if is_sensitive_key(key) else value

        return json.dumps(log_entry, default=str)


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging to stdout.

    Should be called once at application startup.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(StructuredFormatter())
    root_logger.addHandler(console_handler)

    # Quiet the AWS SDK and HTTP stack
    logging.getLogger("boto3").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get logger for a module."""
    return logging.getLogger(name)


def generate_execution_id() -> str:
    """Generate a new runbook execution ID."""
    return str(uuid.uuid4())


def set_execution_id(execution_id: str | None) -> None:
    """Set the execution ID for the current context."""
    _ = _execution_id.set(execution_id)


def get_execution_id() -> str | None:
    """Get the execution ID of the current context, if any."""
    return _execution_id.get()


def log_with_context(
    logger: logging.Logger,
    level: str,
    message: str,
    **context: object,
) -> None:
    """
    Log message with additional structured context.

    Context fields become top-level JSON fields of the entry.

    Args:
        logger: Logger instance
        level: Log level (debug, info, warning, error, critical)
        message: Human-readable log message
        **context: Additional context fields as keyword arguments

    Example:
        >>> log_with_context(
        ...     logger,
        ...     "info",
        ...     "Revoked ingress rules",
        ...     group_id="sg-123",
        ...     rule_count=2,
        ... )
    """
    log_func: Callable[..., None] = getattr(logger, level.lower())
    log_func(message, extra=dict(context))


class LogContext:
    """
    Context manager binding an execution ID to a block of code.

    Restores whatever execution ID was active before, so nested runs (a
    batch dispatching single findings) do not clobber each other.

    Example:
        >>> with LogContext() as execution_id:
        ...     document.execute(finding)
    """

    def __init__(self, execution_id: str | None = None) -> None:
        self.execution_id: str = execution_id or generate_execution_id()
        self._previous: str | None = None

    def __enter__(self) -> str:
        self._previous = _execution_id.get()
        set_execution_id(self.execution_id)
        return self.execution_id

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        set_execution_id(self._previous)
