"""Pure HTTP response builders."""

from email.utils import formatdate
from http import HTTPStatus
from typing import Iterable, Optional

from mock_responder.domain.http_types import HttpResponse, IncomingRequest, should_close

CONTENT_TYPE = "text/plain; charset=utf-8"


def reason_phrase(status: int) -> str:
    """Return the standard reason phrase for ``status`` or ``""`` if it has none."""
    try:
        return HTTPStatus(status).phrase
    except ValueError:
        return ""


def status_line(status: int) -> str:
    """Return the HTTP/1.1 status line for ``status``."""
    phrase = reason_phrase(status) or f"status code {status}"
    return f"HTTP/1.1 {status} {phrase}"


def text_response(
    status: int,
    request: Optional[IncomingRequest],
    extra_headers: Iterable[tuple[str, str]] = (),
    close_connection: Optional[bool] = None,
) -> HttpResponse:
    """Return a response whose body is the reason phrase of ``status``."""
    headers = list(extra_headers)
    headers.append(("Content-Type", CONTENT_TYPE))
    headers.append(("Date", formatdate(usegmt=True)))
    if close_connection is None:
        close_connection = should_close(request)
    return HttpResponse(
        status,
        status_line(status),
        headers,
        reason_phrase(status).encode(),
        close_connection,
        suppress_body=request is not None and request.method == "HEAD",
    )


def error_response(status: int) -> HttpResponse:
    """Produce a protocol-level error reply that always closes the connection."""
    return text_response(status, None, close_connection=True)
