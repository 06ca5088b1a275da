"""JSON logging; every line carries the request's correlation ID when there is one"""
import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional

from ..config.settings import settings

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Fields lifted from `extra=` onto the JSON line
EXTRA_FIELDS = (
    "application_id",
    "applicant_category",
    "stage_id",
    "transition_id",
    "workflow_id",
    "workflow_version_id",
    "history_id",
    "action_id",
    "actor_id",
    "status",
    "server_id",
)

_MAX_LOG_BYTES = 10 * 1024 * 1024
_LOG_BACKUPS = 5

_QUIET_LOGGERS = {
    "uvicorn": logging.INFO,
    "uvicorn.access": logging.WARNING,
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "pymongo": logging.WARNING,
    "apscheduler": logging.WARNING,
}


class JsonFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        line: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        correlation_id = getattr(record, "correlation_id", None) or correlation_id_var.get()
        if correlation_id:
            line["correlation_id"] = correlation_id

        line.update(
            (field, getattr(record, field)) for field in EXTRA_FIELDS if hasattr(record, field)
        )

        if record.exc_info:
            line["exception"] = self.formatException(record.exc_info)

        return json.dumps(line, default=str)


def _rotating_file(filename: str, formatter: logging.Formatter, level: int = logging.NOTSET) -> logging.Handler:
    handler = RotatingFileHandler(
        os.path.join(settings.logs_path, filename),
        maxBytes=_MAX_LOG_BYTES,
        backupCount=_LOG_BACKUPS,
        encoding="utf-8"
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging() -> None:
    """stdout plus app.log, with errors duplicated into error.log"""
    os.makedirs(settings.logs_path, exist_ok=True)
    formatter = JsonFormatter()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.log_level.upper()))
    root.handlers.clear()
    root.addHandler(console)
    root.addHandler(_rotating_file("app.log", formatter))
    root.addHandler(_rotating_file("error.log", formatter, logging.ERROR))

    for name, level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def set_correlation_id(correlation_id: Optional[str]) -> None:
    correlation_id_var.set(correlation_id)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()
