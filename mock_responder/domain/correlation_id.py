"""Per-request correlation IDs carried through log records via contextvars."""

import contextvars
import logging
import uuid
from contextlib import contextmanager
from typing import Any, Iterator, MutableMapping, Optional

ROOT_LOGGER_NAME = "mock_responder"
MAX_INCOMING_ID_LENGTH = 128

_correlation_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "correlation_id", default=None
)


def generate_correlation_id() -> str:
    """Generate a new correlation ID using UUID4."""
    return str(uuid.uuid4())


def get_correlation_id() -> Optional[str]:
    """Retrieve the current correlation ID from context."""
    return _correlation_id_var.get()


def _usable_incoming_id(candidate: Optional[str]) -> Optional[str]:
    if not candidate:
        return None
    candidate = candidate.strip()
    if not candidate or len(candidate) > MAX_INCOMING_ID_LENGTH:
        return None
    if not candidate.isprintable():
        return None
    return candidate


@contextmanager
def correlation_scope(incoming_id: Optional[str] = None) -> Iterator[str]:
    """Bind a correlation ID for the duration of one request.

    The caller-supplied ID (usually ``X-Request-ID``) is reused when it is
    printable and reasonably short; otherwise a fresh UUID is generated. The
    previous value is restored on exit, so nested scopes and reused worker
    threads never leak IDs between requests.
    """
    correlation_id = _usable_incoming_id(incoming_id) or generate_correlation_id()
    token = _correlation_id_var.set(correlation_id)
    try:
        yield correlation_id
    finally:
        _correlation_id_var.reset(token)


class CorrelationLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that injects correlation ID and component into records."""

    def process(
        self, msg: str, kwargs: MutableMapping[str, Any]
    ) -> tuple[str, MutableMapping[str, Any]]:
        extra = dict(kwargs.get("extra") or {})

        correlation_id = get_correlation_id()
        extra["correlation_id"] = correlation_id if correlation_id is not None else "-"

        prefix = f"{ROOT_LOGGER_NAME}."
        logger_name = self.logger.name
        extra["component"] = (
            logger_name[len(prefix) :] if logger_name.startswith(prefix) else logger_name
        )

        kwargs["extra"] = extra
        return msg, kwargs
