"""
Structured logging with JSON formatting and correlation ID support.

The correlation ID ties every log line emitted while a task runs (or while an
HTTP request is served) back to one unit of work. Executors use the task's
dedup key, so all attempts of ``round-results:20`` share one ID; the API uses
the X-Correlation-ID header.

Task fields passed through ``extra=`` (task_id, task_type, attempt, ...) are
promoted to top-level JSON keys so log pipelines can filter on them directly.
"""
import logging
import json
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator
from contextvars import ContextVar

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")

# Attributes every LogRecord carries; anything else came from extra=
_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__
) | {"message", "asctime"}

TASK_FIELDS = ("task_id", "task_type", "subject_ref", "attempt", "source", "root_task_id")


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in record.__dict__.items() if k not in _RESERVED_ATTRS}


class JSONFormatter(logging.Formatter):
    """
    One JSON object per line: timestamp (UTC), level, logger, message,
    correlation_id, task fields, exception and remaining ``extra`` context.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": correlation_id_var.get(),
        }

        extra = _extra_fields(record)
        for key in TASK_FIELDS:
            if key in extra:
                log_data[key] = extra.pop(key)
        if extra:
            log_data["extra"] = extra

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class ColoredFormatter(logging.Formatter):
    """Colored console formatter for development."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        level_color = self.COLORS.get(record.levelname, "")
        correlation_id = correlation_id_var.get()

        prefix = f"[{correlation_id}] " if correlation_id else ""
        line = f"{level_color}[{record.levelname}]{self.RESET} {prefix}{record.name}: {record.getMessage()}"

        extra = _extra_fields(record)
        if extra:
            line += "  " + " ".join(f"{k}={v}" for k, v in extra.items())

        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)

        return line


def configure_logging(
    level: str = "INFO",
    json_output: bool = True,
    handler: logging.Handler | None = None,
) -> None:
    """
    Configure structured logging for the application.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: JSON lines when True, colored console output otherwise
        handler: Optional custom handler. If None, creates StreamHandler to stdout.
    """
    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    log_level = getattr(logging, level.upper(), logging.INFO)
    root_logger.setLevel(log_level)

    if handler is None:
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(log_level)

    handler.setFormatter(JSONFormatter() if json_output else ColoredFormatter())
    root_logger.addHandler(handler)

    # APScheduler logs every job submission at INFO; ticks log their own outcome
    logging.getLogger("apscheduler.executors").setLevel(logging.WARNING)
    logging.getLogger("apscheduler.scheduler").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def get_correlation_id() -> str:
    """Current correlation ID, or empty string outside a task or request."""
    return correlation_id_var.get()


@contextmanager
def correlation_scope(correlation_id: str) -> Iterator[str]:
    """
    Set the correlation ID for the enclosed block and restore the previous one.

    Usage:
        with correlation_scope(task.dedup_key):
            await handler(invocation)
    """
    token = correlation_id_var.set(correlation_id)
    try:
        yield correlation_id
    finally:
        correlation_id_var.reset(token)
