"""Write the pipeline decision to the client and emit the per-request log line."""

import logging
import socket

from mock_responder.bootstrap.config import ResponderConfig
from mock_responder.domain.correlation_id import CorrelationLoggerAdapter
from mock_responder.domain.http_types import HttpResponse, IncomingRequest, should_close
from mock_responder.domain.response_builders import text_response
from mock_responder.pipeline.checks import PipelineDecision
from mock_responder.pipeline.io import send_response

DUMP_LOGGER = CorrelationLoggerAdapter(logging.getLogger("mock_responder.dump"), {})
ACCESS_LOGGER = CorrelationLoggerAdapter(
    logging.getLogger("mock_responder.access"), {}
)


def build_response(
    decision: PipelineDecision, request: IncomingRequest, force_close: bool = False
) -> HttpResponse:
    """Turn a decision into a response carrying the reason phrase as body."""
    return text_response(
        decision.final_status,
        request,
        decision.propagated_headers,
        close_connection=force_close or should_close(request),
    )


def dump_request(request: IncomingRequest) -> str:
    """Render the request line, headers and body as received."""
    lines = [f"{request.method} {request.target} {request.version}"]
    lines.extend(f"{name}: {value}" for name, value in request.headers)
    lines.append("")
    lines.append(request.body.decode("utf-8", errors="replace"))
    return "\n".join(lines)


def log_exchange(
    request: IncomingRequest,
    response: HttpResponse,
    config: ResponderConfig,
    bytes_out: int = 0,
) -> None:
    """Emit the debug dump or the access line; debug wins when both are on."""
    if config.debug_enabled:
        DUMP_LOGGER.info(
            "%s\n%s",
            dump_request(request),
            response.status_line,
            extra={
                "event": "request_dump",
                "method": request.method,
                "path": request.path,
                "status_code": response.status,
            },
        )
    elif config.access_log_enabled:
        ACCESS_LOGGER.info(
            "%d %s %s",
            response.status,
            request.method,
            request.path,
            extra={
                "event": "access",
                "client": request.remote_addr,
                "method": request.method,
                "path": request.path,
                "status_code": response.status,
                "bytes_in": len(request.body),
                "bytes_out": bytes_out,
            },
        )


def respond(
    decision: PipelineDecision,
    request: IncomingRequest,
    config: ResponderConfig,
    writer: socket.socket,
    force_close: bool = False,
) -> HttpResponse:
    """Send the response for ``decision`` and log it after the write completes."""
    response = build_response(decision, request, force_close)
    bytes_out = send_response(writer, response)
    log_exchange(request, response, config, bytes_out)
    return response
