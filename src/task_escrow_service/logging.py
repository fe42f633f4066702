"""
Structured JSON logging for the task escrow service.

Every record is one JSON object on stdout and in ``<directory>/YYYY-MM-DD.log``.
Context passed through ``extra={...}`` lands under the ``"extra"`` key.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import UTC, datetime
from typing import Any

SERVICE_LOGGER_NAME = "task_escrow_service"

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


def _utc_day() -> str:
    return datetime.now(tz=UTC).strftime("%Y-%m-%d")


class JSONFormatter(logging.Formatter):
    """Render a record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=UTC)
        entry: dict[str, Any] = {
            "timestamp": created.strftime("%Y-%m-%d %H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        extra = {k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS}
        if extra:
            entry["extra"] = extra
        return json.dumps(entry, default=str)


class DailyFileHandler(logging.FileHandler):
    """Append to the current UTC day's file, switching files when the day changes."""

    def __init__(self, directory: str) -> None:
        self._directory = directory
        self._day = _utc_day()
        super().__init__(self._path(self._day), encoding="utf-8")

    def _path(self, day: str) -> str:
        return os.path.abspath(os.path.join(self._directory, f"{day}.log"))

    def emit(self, record: logging.LogRecord) -> None:
        day = _utc_day()
        if day != self._day:
            if self.stream:
                self.stream.close()
                self.stream = None  # type: ignore[assignment]
            self._day = day
            self.baseFilename = self._path(day)
        super().emit(record)


def setup_logging(level: str, service_name: str, log_directory: str) -> logging.Logger:
    """
    Attach the JSON stdout and daily file handlers to the service logger.

    Raises ValueError for a level name ``logging`` does not know.
    """
    numeric_level = logging.getLevelNamesMapping().get(level.upper())
    if numeric_level is None:
        raise ValueError(f"Invalid log level: {level}")

    logger = logging.getLogger(SERVICE_LOGGER_NAME)
    logger.setLevel(numeric_level)
    logger.handlers.clear()
    logger.propagate = False

    os.makedirs(log_directory, exist_ok=True)
    formatter = JSONFormatter()
    for handler in (logging.StreamHandler(sys.stdout), DailyFileHandler(log_directory)):
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    logger.info("Logging configured", extra={"service": service_name, "level": level})
    return logger


def get_logger(name: str) -> logging.Logger:
    """Logger for ``name``, nested under the service logger unless already inside it."""
    if name == SERVICE_LOGGER_NAME or name.startswith(f"{SERVICE_LOGGER_NAME}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{SERVICE_LOGGER_NAME}.{name}")
