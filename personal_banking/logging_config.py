"""
Structured Logging Configuration Module

All loggers live under the ``banking`` namespace. Ledger operations log
through ``log_action`` so every line carries who did what to which resource.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional


ROOT_LOGGER = "banking"
TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

# LogRecord attributes set by log_action, in output order
ACTION_FIELDS = ("user_id", "action", "resource", "correlation_id", "context")


class JSONFormatter(logging.Formatter):
    """One JSON object per log line"""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in ACTION_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = ROOT_LOGGER,
                  log_format: str = "json", log_file: Optional[str] = None) -> logging.Logger:
    """
    Configure the application logger.

    Args:
        level: Log level name
        logger_name: Logger to configure; children inherit its handler
        log_format: "json" or "text"
        log_file: File to append to; stdout when omitted

    Returns:
        The configured logger
    """
    logger = logging.getLogger(logger_name)
    for existing in list(logger.handlers):
        logger.removeHandler(existing)

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    handler.setFormatter(JSONFormatter() if log_format == "json" else logging.Formatter(TEXT_FORMAT))

    logger.addHandler(handler)
    logger.setLevel(level.upper())
    logger.propagate = False
    return logger


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None) -> None:
    """
    Log a ledger action with its structured context.

    ``extra`` holds operation-specific details (amounts, references, error
    codes) and is emitted under the ``context`` key.
    """
    fields = {
        "user_id": user_id,
        "action": action,
        "resource": resource,
        "correlation_id": correlation_id,
        "context": extra or None,
    }
    logger.log(
        logging.getLevelName(level.upper()),
        message,
        extra={k: v for k, v in fields.items() if v is not None}
    )
