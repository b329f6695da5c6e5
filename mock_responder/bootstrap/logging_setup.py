"""Logging configuration for the mock responder.

All components log through children of the ``mock_responder`` logger, which
owns exactly one handler. Structured details travel as ``extra`` fields; the
JSON formatter emits the whitelisted ones as keys and the text formatter
appends them as ``key=value`` pairs.
"""

import json
import logging
import re
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterator, Optional

from mock_responder.domain.correlation_id import (
    ROOT_LOGGER_NAME,
    CorrelationLoggerAdapter,
)

LOGGER_NAME = ROOT_LOGGER_NAME
LOG_FORMAT = "%(asctime)s %(levelname)s [%(correlation_id)s] %(name)s :: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
MAX_BYTES = 10 * 1024 * 1024
BACKUP_COUNT = 5
REDACTED = "[REDACTED]"

# Copied credentials must never leak through structured fields.
SENSITIVE_PATTERNS = [
    re.compile(r"(?i)(authorization|bearer|token|signature|password|secret|api[_-]?key)"),
    re.compile(r"\b[A-Fa-f0-9]{32,}\b"),
    re.compile(r"\b[A-Za-z0-9+/]{32,}={0,2}\b"),
]
# Echoed verbatim in the access message.
UNREDACTED_KEYS = frozenset({"path"})

EXTRA_KEYS = (
    # request
    "client",
    "method",
    "path",
    "status_code",
    "rejected_by",
    "bytes_in",
    "bytes_out",
    # failures
    "error_type",
    "error",
    "errno",
    "retry_in_ms",
    # startup
    "listen",
    "host",
    "port",
    "log_destination",
    "log_level",
    "version",
    "python_version",
    "pipeline",
    # shutdown
    "signal",
    "shutdown_timeout",
    "drained",
    "active_connections",
    "closed_connections",
    "remaining_connections",
)


def redact_sensitive(value: str) -> str:
    """Replace credential-looking strings with a placeholder."""
    if not value:
        return value
    if any(pattern.search(value) for pattern in SENSITIVE_PATTERNS):
        return REDACTED
    return value


def _extra_fields(record: logging.LogRecord) -> Iterator[tuple[str, Any]]:
    """Yield the whitelisted extras present on ``record``, strings redacted."""
    if hasattr(record, "event"):
        yield "event", record.event
    for key in EXTRA_KEYS:
        if not hasattr(record, key):
            continue
        value = getattr(record, key)
        if isinstance(value, str) and key not in UNREDACTED_KEYS:
            value = redact_sensitive(value)
        yield key, value


class CorrelationIdFilter(logging.Filter):  # pylint: disable=too-few-public-methods
    """Ensure correlation_id field exists in log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = "-"
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per record with sorted keys."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "correlation_id": getattr(record, "correlation_id", "-"),
            "component": getattr(record, "component", "unknown"),
            "thread": record.threadName,
            "message": record.getMessage(),
        }
        log_data.update(_extra_fields(record))

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, sort_keys=True, default=str)


class TextFormatter(logging.Formatter):
    """Plain single-line format followed by ``key=value`` extras."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        pairs = " ".join(f"{key}={value}" for key, value in _extra_fields(record))
        if not pairs:
            return line
        head, newline, tail = line.partition("\n")
        return f"{head} {pairs}{newline}{tail}"


def _resolve_level(level_name: str) -> int:
    """Translate text level names into logging module numeric levels."""
    level = getattr(logging, level_name.upper(), None)
    if isinstance(level, int):
        return level
    return logging.INFO


def _open_destination(destination: Optional[str]) -> logging.Handler:
    """Return a handler writing to stdout, stderr or a rotating file."""
    streams = {"stdout": sys.stdout, "stderr": sys.stderr}
    target = destination or "stdout"
    if target.lower() in streams:
        return logging.StreamHandler(streams[target.lower()])

    path = Path(target)
    path.parent.mkdir(parents=True, exist_ok=True)
    return RotatingFileHandler(path, maxBytes=MAX_BYTES, backupCount=BACKUP_COUNT)


def _build_handler(
    destination: Optional[str], level: int, use_json: bool = True
) -> logging.Handler:
    handler = _open_destination(destination)
    handler.setLevel(level)
    if use_json:
        handler.setFormatter(JsonFormatter(datefmt=DATE_FORMAT))
    else:
        handler.setFormatter(TextFormatter(LOG_FORMAT, DATE_FORMAT))
    handler.addFilter(CorrelationIdFilter())
    return handler


def configure_logging(
    level: str = "INFO", destination: Optional[str] = None, use_json: bool = True
) -> CorrelationLoggerAdapter:
    """Install the single project handler and return an adapter for it.

    Calling this again replaces the previous handler, so repeated
    configuration never duplicates output.
    """
    logger = logging.getLogger(LOGGER_NAME)
    numeric_level = _resolve_level(level)
    logger.setLevel(numeric_level)
    logger.propagate = False

    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()

    logger.addHandler(_build_handler(destination, numeric_level, use_json))
    return CorrelationLoggerAdapter(logger, {})
