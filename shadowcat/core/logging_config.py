"""
Centralized logging configuration with structured logging support.
"""
import json
import logging
import logging.config
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from shadowcat.core.config import settings

# Examinee correlation for log entries emitted while a simulated test runs.
# Set by the simulation harness around each examinee's stage loop.
examinee_id_context: ContextVar[Optional[int]] = ContextVar(
    "examinee_id", default=None
)


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for production logging.

    Produces structured log entries with consistent fields for log aggregation.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc)
        log_entry: Dict[str, Any] = {
            "timestamp": timestamp.isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        examinee_id = examinee_id_context.get()
        if examinee_id is not None:
            log_entry["examinee_id"] = examinee_id

        # Structured stage fields passed via `extra=`
        for attr in ("stage", "duration_ms", "solver_status"):
            if hasattr(record, attr):
                log_entry[attr] = getattr(record, attr)

        if record.levelno >= logging.ERROR:
            log_entry["source"] = f"{record.pathname}:{record.lineno}"

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging() -> None:
    """
    Configure package-wide logging with structured output.

    Configures:
    - Log level from settings
    - JSON formatting for production or when LOG_FORMAT=json
    - Human-readable format otherwise
    """
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    use_json = settings.ENV == "production" or settings.LOG_FORMAT == "json"

    logging_config: Dict[str, Any] = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
            "json": {
                "()": JSONFormatter,
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": log_level,
                "formatter": "json" if use_json else "default",
                "stream": sys.stdout,
            },
        },
        "root": {
            "level": log_level,
            "handlers": ["console"],
        },
        "loggers": {
            "shadowcat": {
                "level": log_level,
                "handlers": ["console"],
                "propagate": False,
            },
        },
    }

    logging.config.dictConfig(logging_config)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance with the given name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)
