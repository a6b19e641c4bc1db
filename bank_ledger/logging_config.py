"""
Structured Logging Configuration Module

One JSON object per record for ledger events. Ledger code attaches
``action``, ``resource``, ``correlation_id`` and ``extra`` through
``log_action``; the formatter emits whichever of them are set.
"""

import logging
import json
from datetime import datetime, timezone
from typing import IO, Optional

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

STRUCTURED_FIELDS = ("correlation_id", "action", "resource", "extra")


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "module": record.module,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in STRUCTURED_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_entry[field] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "bank_ledger",
                  log_format: str = "json", stream: Optional[IO] = None) -> logging.Logger:
    """
    Attach a single stream handler to ``logger_name``.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logger_name: Logger to configure; child loggers inherit the handler
        log_format: "json" for structured output, "text" for plain lines
        stream: Target stream, stderr when omitted

    Returns:
        The configured logger
    """
    logger = logging.getLogger(logger_name)
    logger.handlers.clear()

    handler = logging.StreamHandler(stream)
    formatter = logging.Formatter(TEXT_FORMAT) if log_format == "text" else JSONFormatter()
    handler.setFormatter(formatter)

    logger.addHandler(handler)
    logger.setLevel(level.upper())
    logger.propagate = False
    return logger


def get_logger(name: str = "bank_ledger") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               action: Optional[str] = None, resource: Optional[str] = None,
               correlation_id: Optional[str] = None, extra: Optional[dict] = None):
    """
    Log a ledger event with structured fields.

    The record's module is the caller's, not this module's.
    """
    fields = {
        "action": action,
        "resource": resource,
        "correlation_id": correlation_id,
        "extra": extra,
    }
    logger.log(
        getattr(logging, level.upper()),
        message,
        extra={name: value for name, value in fields.items() if value is not None},
        stacklevel=2
    )
