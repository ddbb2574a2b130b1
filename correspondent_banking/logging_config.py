"""
Structured Logging Configuration Module

JSON log lines for settlement operations. Every settlement-relevant event
carries the instruction reference as correlation id so one payment can be
followed from validation through commit, journal append and recovery.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# Record attributes promoted to top-level JSON keys when present
STRUCTURED_FIELDS = ("correlation_id", "institution", "action", "resource", "details")

TEXT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s [%(correlation_id)s] %(message)s"


class JSONFormatter(logging.Formatter):
    """One JSON object per record, stamped with the record's own creation time"""

    def format(self, record):
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
            "message": record.getMessage(),
        }
        for name in STRUCTURED_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            log_entry["stack"] = self.formatStack(record.stack_info)

        return json.dumps(log_entry, default=str)


class _CorrelationDefault(logging.Filter):
    """Lets TEXT_FORMAT render records logged without a correlation id"""

    def filter(self, record):
        if not hasattr(record, "correlation_id"):
            record.correlation_id = "-"
        return True


def setup_logging(level: str = "INFO", logger_name: str = "nostrovostro",
                  log_format: str = "json", log_file: Optional[str] = None) -> logging.Logger:
    """
    Setup structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logger_name: Name of the root application logger
        log_format: "json" for structured output, "text" for plain lines
        log_file: Optional file path; stderr when omitted

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)

    # Remove existing handlers to avoid duplicates
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.addFilter(_CorrelationDefault())
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False

    return logger


def get_logger(name: str = "nostrovostro") -> logging.Logger:
    """Get logger instance"""
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               institution: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None):
    """
    Log a settlement event with structured fields.

    Args:
        logger: Logger instance
        level: Log level name (info, warning, critical, ...)
        message: Log message
        institution: Institution the event concerns
        action: Operation name, e.g. "settle" or "journal_append"
        resource: Store resource touched, e.g. "journal:12"
        correlation_id: Instruction reference number
        extra: Additional structured data, emitted under "details"
    """
    fields = {
        "institution": institution,
        "action": action,
        "resource": resource,
        "correlation_id": correlation_id,
        "details": extra or None,
    }
    # stacklevel=2 attributes the record to the caller, not this helper
    logger.log(
        getattr(logging, level.upper()), message,
        extra={k: v for k, v in fields.items() if v is not None},
        stacklevel=2,
    )
