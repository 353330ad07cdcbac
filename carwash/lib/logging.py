"""
JSON logging for the API and services.

Every line is one JSON object carrying the request's correlation id (set by
CorrelationIdMiddleware) plus whatever the caller passed through ``extra=``.
"""
import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from carwash.lib.settings import settings


correlation_id_var: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)

# Attributes every LogRecord carries; anything else came in through `extra=`
_RESERVED_ATTRS = set(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime"}

_QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "uvicorn.access")


class JSONFormatter(logging.Formatter):
    """Render a LogRecord as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        correlation_id = correlation_id_var.get()
        if correlation_id:
            payload["correlation_id"] = correlation_id
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        payload.update(
            (key, value)
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS and key not in payload
        )
        return json.dumps(payload, default=str)


def setup_logging(level: str = "INFO", json_format: bool = True) -> None:
    """
    Replace the root handlers with a single stdout handler.

    Args:
        level: Log level name; unknown names fall back to INFO
        json_format: JSON lines when True, plain text otherwise
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(
        JSONFormatter()
        if json_format
        else logging.Formatter('%(asctime)s %(levelname)s [%(name)s] %(message)s')
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def set_correlation_id(correlation_id: Optional[str]) -> None:
    """Bind the correlation id to the current request context."""
    correlation_id_var.set(correlation_id)


setup_logging(level="DEBUG" if settings.debug else "INFO", json_format=True)
