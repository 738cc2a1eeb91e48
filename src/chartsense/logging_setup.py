"""
Logging Setup Module
====================

One JSON object per line on stdout, so the capture loop and analysis
cycles can be followed with any log shipper.

Log format:
    {
        "timestamp": "2024-01-27T12:00:00.000Z",
        "level": "INFO",
        "logger": "chartsense.analysis_scheduler",
        "message": "oracle_request_sent",
        "mode": "balanced",
        "trend": "bullish"
    }

Fields passed through ``extra=`` are flattened into the object. Enums are
logged by value and numpy scalars/arrays as plain numbers/lists.
"""

import logging
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import numpy as np
import orjson

# LogRecord attributes that never come from `extra`
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}

# Third-party loggers capped at WARNING
QUIET_LOGGERS = ("aiohttp", "asyncio", "uvicorn", "uvicorn.access", "comtypes", "PIL")


def to_loggable(value: Any) -> Any:
    """Reduce an `extra` value to something orjson accepts."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (str, int, float, bool, type(None))):
        return value
    if isinstance(value, dict):
        return {str(k): to_loggable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_loggable(v) for v in value]
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, np.ndarray):
        return value.tolist()
    return str(value)


class JsonFormatter(logging.Formatter):
    """Structured JSON formatter; tracebacks land in ``exception``."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        entry.update(
            (key, to_loggable(value))
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRS and not key.startswith("_")
        )
        return orjson.dumps(entry).decode("utf-8")


def setup_logging(log_level: str = "INFO") -> None:
    """
    Route every logger to a single JSON stdout handler.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonFormatter())
    handler.setLevel(level)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
