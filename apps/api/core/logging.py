"""
Structured logging for the API and the Celery worker.

Application logs are JSON in production (or when LOG_FORMAT=json) and plain
text otherwise. The ``velosync.audit`` trail is always emitted as one JSON
object per line on its own handler so it can be shipped separately.
"""
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from core.config import settings

AUDIT_LOGGER = "velosync.audit"
SERVICE_NAME = "velosync"

# Libraries that log every request at INFO
_NOISY_LOGGERS = {
    "sqlalchemy.engine": logging.WARNING,
    "urllib3": logging.WARNING,
    "celery": logging.INFO,
    "kombu": logging.WARNING,
}


class JSONFormatter(logging.Formatter):
    """One JSON object per record. ``extra={"extra_fields": {...}}`` is merged in."""

    def __init__(self, service: str = SERVICE_NAME, environment: Optional[str] = None):
        super().__init__()
        self.service = service
        self.environment = environment or settings.ENVIRONMENT

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "service": self.service,
            "environment": self.environment,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        extra_fields = getattr(record, "extra_fields", None)
        if isinstance(extra_fields, dict):
            log_data.update(extra_fields)

        return json.dumps(log_data, default=str)


class AuditLineFormatter(logging.Formatter):
    """Audit records already carry a JSON payload; pass it through untouched."""

    def format(self, record: logging.LogRecord) -> str:
        return record.getMessage()


def _level(name: str) -> int:
    return getattr(logging, (name or "INFO").upper(), logging.INFO)


def setup_logging(level: Optional[str] = None) -> logging.Logger:
    """
    Configure root and audit logging. Safe to call more than once
    (API startup and every Celery worker process).
    """
    log_level = _level(level or settings.LOG_LEVEL)

    if settings.LOG_FORMAT == "json" or settings.ENVIRONMENT == "production":
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    audit_logger = logging.getLogger(AUDIT_LOGGER)
    audit_logger.handlers.clear()
    audit_handler = logging.StreamHandler(sys.stdout)
    audit_handler.setFormatter(AuditLineFormatter())
    audit_logger.addHandler(audit_handler)
    audit_logger.setLevel(logging.INFO)
    audit_logger.propagate = False

    for name, noisy_level in _NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(noisy_level)

    return root_logger
