"""Process-wide logging setup.

Services log through ``logging.getLogger(__name__)`` with ``key=value`` event
lines; this module only decides where those records go and how they look.
"""

from __future__ import annotations

import json
import logging
import logging.config
from datetime import UTC, datetime

from app.config import settings

_RESERVED_ATTRS = set(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime"}

_configured = False


class JsonLineFormatter(logging.Formatter):
    """Render each record as a single JSON object."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key.startswith("_"):
                continue
            payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def build_logging_config(level: str | None = None, fmt: str | None = None) -> dict:
    level = (level or settings.log_level).upper()
    formatter = "json" if (fmt or settings.log_format).lower() == "json" else "text"
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "text": {
                "format": "%(asctime)s %(levelname)s %(name)s - %(message)s",
            },
            "json": {"()": JsonLineFormatter},
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": formatter,
                "stream": "ext://sys.stdout",
            }
        },
        "loggers": {
            "": {"level": level, "handlers": ["console"]},
            "uvicorn.access": {"level": level, "handlers": ["console"], "propagate": False},
        },
    }


def configure_logging(level: str | None = None, fmt: str | None = None) -> None:
    global _configured
    if _configured:
        return
    logging.config.dictConfig(build_logging_config(level, fmt))
    _configured = True


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
