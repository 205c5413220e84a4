"""Configure application logging with the standard library.

Console handler with JSON lines: timestamp, level, logger, message, plus any
``order_id``/``event_id``/``reference`` passed through ``extra``.
"""

import json
import logging
from datetime import datetime, timezone

CONTEXT_FIELDS = ("order_id", "event_id", "reference", "worker_id", "source")

SECURITY_LOGGER = "storefront.security"


class JsonFormatter(logging.Formatter):
    """Format log records as JSON strings."""

    def format(self, record: logging.LogRecord) -> str:
        log_record = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in CONTEXT_FIELDS:
            if hasattr(record, field):
                log_record[field] = str(getattr(record, field))
        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(log_record)


def configure_logging(level: str | int = logging.INFO) -> None:
    """Install a single JSON console handler on the root logger."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(JsonFormatter())
    console_handler.setLevel(level)
    root.addHandler(console_handler)


def security_logger() -> logging.Logger:
    return logging.getLogger(SECURITY_LOGGER)
