"""Logging setup for r2pilot.

Transfer modules attach context to records with ``extra=`` (bucket, key,
part number, upload ID, attempt, HTTP status). Both output formats carry
that context: ``json`` as top-level fields, ``text`` as a trailing
``[key=value ...]`` suffix.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import TextIO

EXTRA_FIELDS = ("bucket", "key", "part_number", "upload_id", "attempt", "status")

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _transfer_context(record: logging.LogRecord) -> dict[str, object]:
    context = {}
    for field in EXTRA_FIELDS:
        value = getattr(record, field, None)
        if value is not None and value != "":
            context[field] = value
    return context


class JSONFormatter(logging.Formatter):
    """One JSON object per line: timestamp, level, logger, message, context."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(_transfer_context(record))
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable lines with the transfer context appended."""

    def __init__(self) -> None:
        super().__init__(TEXT_FORMAT)

    def formatMessage(self, record: logging.LogRecord) -> str:
        line = super().formatMessage(record)
        context = _transfer_context(record)
        if context:
            line += " [" + " ".join(f"{k}={v}" for k, v in context.items()) + "]"
        return line


def _build_handler(level: int, fmt: str, stream: TextIO) -> logging.Handler:
    handler = logging.StreamHandler(stream)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter() if fmt == "json" else TextFormatter())
    return handler


def configure_logging(
    level: str = "INFO", fmt: str = "text", stream: TextIO | None = None
) -> None:
    """Replace the root handlers with a single r2pilot handler.

    Logs go to stderr by default so stdout stays clean for command output.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        fmt: 'text' for human-readable lines, 'json' for structured records.
        stream: Destination stream; defaults to ``sys.stderr``.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(numeric_level)
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    root.addHandler(_build_handler(numeric_level, fmt, stream or sys.stderr))

    # httpx logs every request at INFO.
    if numeric_level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)
