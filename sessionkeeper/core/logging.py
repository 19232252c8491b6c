"""SessionKeeper logging setup.

Records may carry auth context through ``extra``: ``operation``,
``user_id`` and ``device_id``. Both formatters render whichever of them
are present.
"""

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Literal

CONTEXT_FIELDS = ("operation", "user_id", "device_id")

DEV_FORMAT = "%(asctime)s.%(msecs)03d %(levelname)-7s %(name)s: %(message)s%(context)s"
DEV_DATEFMT = "%H:%M:%S"

# Visible prefix length when logging credential material
_VISIBLE_TOKEN_CHARS = 6

_QUIET_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


def _context_of(record: logging.LogRecord) -> dict[str, str]:
    return {
        name: str(value)
        for name in CONTEXT_FIELDS
        if (value := getattr(record, name, None)) is not None
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per record, tagged with the service name.

    Fields are serialized with json.dumps, so quotes and newlines in
    messages never break the line format.
    """

    def __init__(self, service: str = "sessionkeeper"):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "time": datetime.fromtimestamp(record.created, tz=UTC).isoformat(timespec="milliseconds"),
            "severity": record.levelname,
            "service": self.service,
            "logger": record.name,
            "source": f"{record.module}:{record.lineno}",
            "message": record.getMessage(),
        }
        entry.update(_context_of(record))
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class DevFormatter(logging.Formatter):
    """Single-line readable output with auth context appended in brackets."""

    def __init__(self) -> None:
        super().__init__(fmt=DEV_FORMAT, datefmt=DEV_DATEFMT)

    def format(self, record: logging.LogRecord) -> str:
        context = _context_of(record)
        record.context = (
            " [" + " ".join(f"{k}={v}" for k, v in context.items()) + "]" if context else ""
        )
        return super().format(record)


def setup_logging(
    level: str = "INFO",
    format_type: Literal["structured", "dev"] = "dev",
    service: str = "sessionkeeper",
) -> None:
    """
    Route all logging to stdout.

    Args:
        level: Root log level name
        format_type: 'structured' for JSON lines, 'dev' for readable lines
        service: Value of the ``service`` field in structured output
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ValueError(f"Unknown log level: {level}")

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter(service) if format_type == "structured" else DevFormatter())
    logging.root.handlers = [handler]
    logging.root.setLevel(numeric_level)

    for logger_name in _QUIET_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    # SQL echo only when debugging
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.DEBUG if numeric_level <= logging.DEBUG else logging.WARNING
    )

    get_logger("startup").debug(f"{service} log output: {format_type} at {level.upper()}")


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the sessionkeeper prefix."""
    return logging.getLogger(f"sessionkeeper.{name}")


def obfuscate_token(token: str | None) -> str:
    """Render a token for log output without exposing it."""
    if not token:
        return "<empty>"
    if len(token) <= _VISIBLE_TOKEN_CHARS * 2:
        return f"***({len(token)})"
    return f"{token[:_VISIBLE_TOKEN_CHARS]}...({len(token)})"
