# backend/logging_config.py
import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from config import Settings

LOGGER_NAME = "labrecords"

_request_id: ContextVar[str] = ContextVar("request_id", default="-")
_user_id: ContextVar[str] = ContextVar("user_id", default="-")


def new_request_id() -> str:
    return uuid.uuid4().hex[:8]


def bind_request(request_id: str) -> None:
    _request_id.set(request_id)
    _user_id.set("-")


def bind_user(user_id: str) -> None:
    _user_id.set(user_id)


class RequestContextFilter(logging.Filter):
    """Stamps every record with the current request and user ids."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = _request_id.get()
        record.user_id = _user_id.get()
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line; structured event fields go under "event"."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.utcfromtimestamp(record.created).isoformat() + "Z",
            "level": record.levelname,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", "-"),
            "user_id": getattr(record, "user_id", "-"),
        }
        fields = getattr(record, "fields", None)
        if fields:
            payload["event"] = fields
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class LabLogger(logging.Logger):
    """Logger with helpers for the events this service reports"""

    def log_request(self, method: str, path: str, status_code: int, duration_ms: float) -> None:
        self.info(
            f"HTTP {method} {path} - {status_code} ({duration_ms:.2f}ms)",
            extra={"fields": {"type": "http", "status": status_code, "duration_ms": round(duration_ms, 2)}},
        )

    def log_auth_event(self, event: str, success: bool, identifier: Optional[str] = None,
                       reason: Optional[str] = None) -> None:
        message = f"Auth {event}: {'success' if success else 'failed'}"
        if identifier:
            message += f" - {identifier}"
        if reason:
            message += f" ({reason})"
        self.log(
            logging.INFO if success else logging.WARNING,
            message,
            extra={"fields": {"type": "auth", "event": event, "success": success}},
        )

    def log_db_write(self, operation: str, table: str, record_id: Optional[str] = None, **fields) -> None:
        self.debug(
            f"DB {operation} on {table}" + (f" ({record_id})" if record_id else ""),
            extra={"fields": {"type": "db", "table": table, "record_id": record_id, **fields}},
        )

    def log_error_with_context(self, error: Exception, context: Optional[str] = None, **fields) -> None:
        self.error(
            f"Error in {context}: {type(error).__name__}: {error}",
            exc_info=error,
            extra={"fields": {"type": "error", "context": context, **fields}},
        )


logger: LabLogger = logging.getLogger(LOGGER_NAME)
logger.__class__ = LabLogger


def setup_logging(settings: Settings) -> LabLogger:
    """Attach handlers to the application logger based on environment"""
    logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    logger.handlers.clear()
    logger.filters.clear()
    logger.addFilter(RequestContextFilter())

    if settings.ENVIRONMENT == "production":
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s | %(levelname)-8s | [%(request_id)s] [%(user_id)s] | %(message)s"
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if settings.LOG_FILE:
        log_file = Path(settings.LOG_FILE)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    for noisy in ("uvicorn.access", "passlib"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    if not settings.DB_ECHO:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    return logger
