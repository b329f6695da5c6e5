"""Request pipeline: rejection checks followed by header propagation.

``evaluate`` is a pure function of the request and the configuration. The
checks run in a fixed order and the first failing one wins with a 403; only
requests that pass every check have credential headers copied onto the
response, so a rejected request never echoes them back.
"""

from dataclasses import dataclass
from http import HTTPStatus
from typing import Optional

from mock_responder.bootstrap.config import ResponderConfig
from mock_responder.domain.http_types import IncomingRequest

AUTH_SUBJECT_HEADER = "X-Auth-Subject"
AUTHORIZATION_HEADER = "Authorization"
PROPAGATED_HEADER_PREFIX = "X-Auth-"

REJECTED_BY_AUTH_SUBJECT = "auth_subject"
REJECTED_BY_METHOD = "request_method"


@dataclass(frozen=True)
class PipelineDecision:
    """Outcome of running the pipeline for one request."""

    final_status: int
    propagated_headers: tuple[tuple[str, str], ...] = ()
    short_circuited: bool = False
    rejected_by: Optional[str] = None


def _forbidden(reason: str) -> PipelineDecision:
    return PipelineDecision(
        final_status=int(HTTPStatus.FORBIDDEN),
        short_circuited=True,
        rejected_by=reason,
    )


def enforce_auth_subject(request: IncomingRequest) -> Optional[PipelineDecision]:
    """Reject requests that carry no ``X-Auth-Subject`` header; its value is ignored."""
    if request.has_header(AUTH_SUBJECT_HEADER):
        return None
    return _forbidden(REJECTED_BY_AUTH_SUBJECT)


def enforce_request_method(
    request: IncomingRequest, allowed_methods: frozenset[str]
) -> Optional[PipelineDecision]:
    """Reject methods that are not a case-exact member of the allowlist."""
    if request.method in allowed_methods:
        return None
    return _forbidden(REJECTED_BY_METHOD)


def is_propagated_header(name: str) -> bool:
    """True for ``Authorization`` and every ``X-Auth-*`` header."""
    return name == AUTHORIZATION_HEADER or name.startswith(PROPAGATED_HEADER_PREFIX)


def collect_propagated_headers(
    request: IncomingRequest,
) -> tuple[tuple[str, str], ...]:
    """Return the credential headers to copy, grouped by name in first-seen order."""
    return tuple(
        (name, value)
        for name, values in request.header_map().items()
        if is_propagated_header(name)
        for value in values
    )


def evaluate(request: IncomingRequest, config: ResponderConfig) -> PipelineDecision:
    """Decide the response status and propagated headers for ``request``."""
    if config.check_auth_subject_enabled:
        rejection = enforce_auth_subject(request)
        if rejection is not None:
            return rejection

    if config.check_method_enabled:
        rejection = enforce_request_method(request, config.allowed_methods)
        if rejection is not None:
            return rejection

    propagated: tuple[tuple[str, str], ...] = ()
    if config.copy_header_enabled:
        propagated = collect_propagated_headers(request)

    return PipelineDecision(
        final_status=config.response_status,
        propagated_headers=propagated,
    )
