"""
Logging Configuration

Called once from the FastAPI lifespan. Supports human-readable text and
single-line JSON output, selected by ``settings.log_format``.
"""

import json
import logging
import sys
from datetime import UTC, datetime

from campus.core.config import settings


class JSONFormatter(logging.Formatter):
    """Single-line JSON log formatter for log aggregators."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


# Third-party loggers that are noisy at INFO
_NOISY_LOGGERS = [
    "apscheduler",
    "sqlalchemy.engine",
    "httpx",
    "httpcore",
]


def configure_logging(level_name: str | None = None, log_format: str | None = None) -> None:
    """
    Set up the root logger.

    Args:
        level_name: Log level name, defaults to settings.log_level
        log_format: "text" or "json", defaults to settings.log_format
    """
    level_name = (level_name or settings.log_level).upper()
    level = getattr(logging, level_name, logging.INFO)
    log_format = (log_format or settings.log_format).lower()

    root = logging.getLogger()
    root.setLevel(level)

    # Remove existing handlers to avoid duplicates on reload
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)

    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "[%(asctime)s] %(levelname)s %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
