"""Logging setup for the backend package."""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone

ROOT_LOGGER_NAME = "backend"


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    _STANDARD_ATTRS = {
        "name", "msg", "args", "created", "filename", "funcName", "levelname",
        "levelno", "lineno", "module", "msecs", "message", "pathname", "process",
        "processName", "relativeCreated", "thread", "threadName", "exc_info",
        "exc_text", "stack_info", "taskName",
    }

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info),
            }
        extra_fields = {
            key: value
            for key, value in record.__dict__.items()
            if key not in self._STANDARD_ATTRS
        }
        if extra_fields:
            log_data["extra"] = extra_fields
        return json.dumps(log_data, default=str)


def setup_logging(level: str | None = None, fmt: str | None = None) -> logging.Logger:
    """Configure the ``backend`` logger once; later calls replace its handlers.

    ``level`` defaults to ``LOG_LEVEL`` (INFO) and ``fmt`` to ``LOG_FORMAT``
    (``text`` or ``json``).
    """
    resolved_level = (level or os.getenv("LOG_LEVEL", "INFO")).strip().upper()
    resolved_format = (fmt or os.getenv("LOG_FORMAT", "text")).strip().lower()

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(getattr(logging, resolved_level, logging.INFO))
    logger.handlers.clear()

    handler = logging.StreamHandler()
    if resolved_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def get_logger(name: str) -> logging.Logger:
    if name == ROOT_LOGGER_NAME or name.startswith(f"{ROOT_LOGGER_NAME}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
