"""
Structured logging for the telemetry bus.

Provides:
- JSON lines for production, a console renderer for local runs
- Masking of secrets and visitor-identifying fields before rendering
- Per-task context (worker, batch_id) through structlog contextvars
"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, TextIO

import structlog
from structlog.types import EventDict, Processor


# Substrings of keys whose values never reach a log line
SENSITIVE_KEYS = (
    "ip_address", "user_agent", "email",
    "password", "token", "secret", "api_key", "private_key",
)
REDACTED = "[REDACTED]"

# Third-party loggers kept at WARNING regardless of the bus level
QUIET_LOGGERS = ("aiosqlite", "asyncio")


def add_timestamp(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """UTC ISO-8601 timestamp."""
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def _is_sensitive(key: Any) -> bool:
    return isinstance(key, str) and any(s in key.lower() for s in SENSITIVE_KEYS)


def _mask(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: REDACTED if _is_sensitive(k) else _mask(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_mask(item) for item in value]
    return value


def redact_sensitive(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Mask personal and secret fields, including inside nested payloads.

    Consent sanitization strips identity from stored events; log lines can
    carry raw payloads from before sanitization.
    """
    return _mask(event_dict)


def _renderer(log_format: str) -> Processor:
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def configure_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    stream: TextIO | None = None,
) -> None:
    """
    Configure structlog and the standard library root logger.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        log_format: "json" or "text"
        stream: Output stream (default: stdout)
    """
    level = logging.getLevelName(log_level.upper())
    out = stream or sys.stdout

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            add_timestamp,
            redact_sensitive,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _renderer(log_format),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=out),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=out, level=level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.BoundLogger:
    """Logger for a module, usually get_logger(__name__)."""
    return structlog.get_logger(name)


class LogContext:
    """
    Bind context for the duration of a block.

    Usage:
        with LogContext(batch_id=batch.batch_id):
            await controller.dispatch(batch, handler)
    """

    def __init__(self, **context: Any):
        self.context = context

    def __enter__(self) -> "LogContext":
        structlog.contextvars.bind_contextvars(**self.context)
        return self

    def __exit__(self, *args: Any) -> None:
        structlog.contextvars.unbind_contextvars(*self.context)


def bind_context(**context: Any) -> None:
    """Bind context for the rest of the current task."""
    structlog.contextvars.bind_contextvars(**context)
