"""
Logging configuration for the application.

``setup_logging`` configures the root logger with a console handler and
an optional file handler.  Two output formats are supported: a plain
text line (timestamp, level, logger name, message) for development and
a single JSON object per line for production log collectors.  Extra
structured data can be attached to any record with
``logger.info("...", extra={"context": {...}})``; the JSON formatter
emits it under ``context`` and the text formatter ignores it.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

SERVICE_NAME = "ecotrace-backend"


class JsonFormatter(logging.Formatter):
    """Render log records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
            "service": SERVICE_NAME,
        }
        context = getattr(record, "context", None)
        if context:
            entry["context"] = context
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def build_formatter(fmt: str = "text") -> logging.Formatter:
    """Return the formatter for ``fmt`` (``"text"`` or ``"json"``)."""
    if fmt == "json":
        return JsonFormatter()
    return logging.Formatter(
        fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def setup_logging(level: str = "INFO", logfile: Optional[str] = None, fmt: str = "text") -> None:
    """Configure root logger.

    If no handlers are attached to the root logger, attach a console
    handler and optionally a file handler.

    Parameters
    ----------
    level : str
        Logging level name (e.g. ``"DEBUG"``, ``"INFO"``).  Case
        insensitive.
    logfile : Optional[str]
        Path to a file to log messages to.  If omitted, no file
        handler is added.
    fmt : str
        ``"text"`` for human-readable lines, ``"json"`` for structured
        output.
    """
    logger = logging.getLogger()
    if logger.handlers:
        # Already configured (tests, repeated create_app calls).
        return

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(numeric_level)

    formatter = build_formatter(fmt)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if logfile:
        log_path = Path(logfile).resolve()
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
