"""Logging configuration helpers with structured output."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from logging.handlers import TimedRotatingFileHandler
from typing import Any

from .config import AppConfig

# Third-party loggers that drown the watcher's own output at DEBUG.
NOISY_LOGGERS: tuple[str, ...] = ("apscheduler", "urllib3", "PIL")
# ``extra=`` keys passed by biliwatch modules that belong in the JSON record.
EXTRA_FIELDS: tuple[str, ...] = ("account_id", "recipients", "paths")


class JsonFormatter(logging.Formatter):
    """JSON formatter for log aggregation systems.

    Messages emitted by ``_log_event`` are already JSON objects; their fields are
    merged into the record so ``event`` is a top-level key in the file log.
    """

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": message,
            "event": getattr(record, "event", record.funcName),
            "environment": getattr(record, "environment", "unknown"),
        }
        structured = _structured_fields(message)
        if structured is not None:
            payload.update(structured)
            payload["message"] = structured.get("event", message)
        for key in EXTRA_FIELDS:
            if key in record.__dict__:
                payload[key] = record.__dict__[key]
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=False)


def _structured_fields(message: str) -> dict[str, Any] | None:
    if not message.startswith("{"):
        return None
    try:
        decoded = json.loads(message)
    except ValueError:
        return None
    return decoded if isinstance(decoded, dict) and "event" in decoded else None


class ContextFilter(logging.Filter):
    """Injects common context fields into every log record."""

    def __init__(self, environment: str) -> None:
        super().__init__()
        self._environment = environment

    def filter(self, record: logging.LogRecord) -> bool:
        record.environment = self._environment
        record.event = getattr(record, "event", record.funcName)
        return True


def configure_logging(config: AppConfig) -> None:
    """Configure structured logging with both console and rotating file outputs."""
    root = logging.getLogger()
    root.setLevel(logging.INFO if config.environment != "development" else logging.DEBUG)

    for handler in list(root.handlers):
        root.removeHandler(handler)

    context_filter = ContextFilter(config.environment)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    console_handler.addFilter(context_filter)
    root.addHandler(console_handler)

    config.log_path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = TimedRotatingFileHandler(
        filename=str(config.log_path),
        when="midnight",
        backupCount=14,
        utc=True,
        encoding="utf-8",
    )
    file_handler.setFormatter(JsonFormatter())
    file_handler.addFilter(context_filter)
    root.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
