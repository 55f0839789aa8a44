"""Structured JSON logging for the kernel."""

import json
import logging
from datetime import datetime, timezone

CONTEXT_FIELDS = ("policy_version", "rule_id", "suggestion_id", "analysis_id", "record_id")


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        # Context passed through ``extra=``
        for field in CONTEXT_FIELDS:
            if hasattr(record, field):
                log_entry[field] = getattr(record, field)
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Install a single JSON stream handler on the package logger."""
    logger = logging.getLogger("matrix_kernel")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    for existing in list(logger.handlers):
        if isinstance(existing.formatter, JSONFormatter):
            logger.removeHandler(existing)
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logger.addHandler(handler)
    return logger
