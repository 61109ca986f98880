"""Structured logging utilities for the worker and the refresh jobs."""

from __future__ import annotations

import json
import logging
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from time import perf_counter
from typing import Any

_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)


class JSONFormatter(logging.Formatter):
    """Format log records as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if getattr(record, "correlation_id", None):
            log_data["correlation_id"] = record.correlation_id

        standard_attrs = {
            "name", "msg", "args", "created", "filename", "funcName",
            "levelname", "levelno", "lineno", "module", "msecs", "pathname",
            "process", "processName", "relativeCreated", "stack_info",
            "exc_info", "exc_text", "thread", "threadName", "taskName",
            "message", "correlation_id",
        }

        for key, value in record.__dict__.items():
            if key not in standard_attrs and not key.startswith("_"):
                if isinstance(value, datetime):
                    log_data[key] = value.isoformat()
                elif hasattr(value, "__dict__"):
                    log_data[key] = str(value)
                else:
                    try:
                        json.dumps(value)
                        log_data[key] = value
                    except (TypeError, ValueError):
                        log_data[key] = str(value)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class CorrelationIdFilter(logging.Filter):
    """Stamp records with the correlation ID bound in the current context.

    The ID lives in a ContextVar rather than on the class so that messages
    processed on the rate limiter's thread keep their own ID.
    """

    @staticmethod
    def set_correlation_id(correlation_id: str | None) -> None:
        _correlation_id.set(correlation_id)

    @staticmethod
    def get_correlation_id() -> str | None:
        return _correlation_id.get()

    @staticmethod
    def generate_correlation_id() -> str:
        correlation_id = str(uuid.uuid4())
        _correlation_id.set(correlation_id)
        return correlation_id

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = _correlation_id.get()
        return True


@contextmanager
def bind_correlation_id(correlation_id: str | None):
    """Bind a correlation ID for the duration of the block."""
    token = _correlation_id.set(correlation_id)
    try:
        yield correlation_id
    finally:
        _correlation_id.reset(token)


def setup_logging(level: str = "INFO", json_format: bool = True) -> None:
    """Configure logging for the application."""
    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper())
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level.upper())

    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s | %(levelname)-8s | %(name)s | %(correlation_id)s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    handler.addFilter(CorrelationIdFilter())
    root_logger.addHandler(handler)

    for noisy in ("botocore", "boto3", "urllib3", "azure"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name."""
    return logging.getLogger(name)


@contextmanager
def log_operation(logger: logging.Logger, operation: str, **context: Any):
    """Context manager for logging operation start/end with timing."""
    start_time = perf_counter()
    logger.info(f"Starting {operation}", extra=context)

    try:
        yield
    except Exception as e:
        duration_ms = int((perf_counter() - start_time) * 1000)
        logger.error(
            f"Failed {operation}",
            extra={**context, "duration_ms": duration_ms, "error": str(e)},
            exc_info=True,
        )
        raise
    else:
        duration_ms = int((perf_counter() - start_time) * 1000)
        logger.info(f"Completed {operation}", extra={**context, "duration_ms": duration_ms})
