"""Worker thread logic for handling individual client connections."""

import logging
import socket

from mock_responder.bootstrap.config import CONNECTION_TIMEOUT_SECONDS
from mock_responder.domain.correlation_id import (
    CorrelationLoggerAdapter,
    correlation_scope,
)
from mock_responder.domain.http_types import HttpResponse, IncomingRequest
from mock_responder.domain.response_builders import error_response
from mock_responder.pipeline.checks import evaluate
from mock_responder.pipeline.io import (
    RECV_SIZE,
    MalformedRequest,
    RequestEntityTooLarge,
    RequestHeaderFieldsTooLarge,
    receive_request,
    send_response,
)
from mock_responder.pipeline.responder import respond
from mock_responder.transport.context import WorkerContext

WORKER_LOGGER = CorrelationLoggerAdapter(
    logging.getLogger("mock_responder.transport.worker"), {}
)

BAD_REQUEST = 400
PAYLOAD_TOO_LARGE = 413
HEADER_FIELDS_TOO_LARGE = 431


def _serve_request(
    request: IncomingRequest, client_socket: socket.socket, context: WorkerContext
) -> HttpResponse:
    with correlation_scope(request.header("X-Request-ID")):
        decision = evaluate(request, context.config)
        if decision.short_circuited and WORKER_LOGGER.logger.isEnabledFor(logging.DEBUG):
            WORKER_LOGGER.debug(
                "Request rejected by pipeline",
                extra={
                    "event": "request_rejected",
                    "client": request.remote_addr,
                    "method": request.method,
                    "path": request.path,
                    "rejected_by": decision.rejected_by,
                },
            )
        return respond(
            decision,
            request,
            context.config,
            client_socket,
            force_close=context.lifecycle.is_draining(),
        )


def _serve_connection(
    client_socket: socket.socket, client_address: str, context: WorkerContext
) -> None:
    """Read and answer requests until the connection should end."""
    lifecycle = context.lifecycle
    buffer = b""
    served = 0
    while True:
        if not buffer:
            buffer = client_socket.recv(RECV_SIZE)
            if not buffer:
                return
        if served and not lifecycle.mark_active(client_socket):
            return

        request, buffer = receive_request(
            client_socket, buffer, context.config.max_body_bytes, client_address
        )
        if request is None:
            if WORKER_LOGGER.logger.isEnabledFor(logging.DEBUG):
                WORKER_LOGGER.debug(
                    "Client disconnected during request",
                    extra={"event": "client_disconnected", "client": client_address},
                )
            return

        response = _serve_request(request, client_socket, context)
        served += 1
        if response.close_connection:
            return
        if not lifecycle.mark_idle(client_socket):
            return


def _send_protocol_error(
    client_socket: socket.socket, status: int, event: str, client_address: str
) -> None:
    WORKER_LOGGER.warning(
        "Rejecting unreadable request",
        extra={"event": event, "client": client_address, "status_code": status},
    )
    try:
        send_response(client_socket, error_response(status))
    except OSError as error:
        WORKER_LOGGER.debug(
            "Could not deliver error response",
            extra={
                "event": "connection_error",
                "client": client_address,
                "error_type": type(error).__name__,
            },
        )


def handle_client(
    client_socket: socket.socket, client_address: str, context: WorkerContext
) -> None:
    """Serve one connection; runs on its own thread and always releases it."""
    lifecycle = context.lifecycle
    try:
        client_socket.settimeout(CONNECTION_TIMEOUT_SECONDS)
        _serve_connection(client_socket, client_address, context)
    except RequestEntityTooLarge:
        _send_protocol_error(
            client_socket,
            PAYLOAD_TOO_LARGE,
            "body_size_exceeded",
            client_address,
        )
    except RequestHeaderFieldsTooLarge:
        _send_protocol_error(
            client_socket,
            HEADER_FIELDS_TOO_LARGE,
            "header_size_exceeded",
            client_address,
        )
    except MalformedRequest:
        _send_protocol_error(
            client_socket, BAD_REQUEST, "malformed_request", client_address
        )
    except socket.timeout:
        WORKER_LOGGER.debug(
            "Connection timed out",
            extra={"event": "connection_timeout", "client": client_address},
        )
    except OSError as error:
        log = WORKER_LOGGER.debug if lifecycle.should_stop() else WORKER_LOGGER.error
        log(
            "Error handling client connection",
            extra={
                "event": "connection_error",
                "client": client_address,
                "error_type": type(error).__name__,
            },
        )
    except Exception as error:  # pylint: disable=broad-except
        WORKER_LOGGER.error(
            "Unexpected error in worker",
            extra={
                "event": "worker_error",
                "client": client_address,
                "error_type": type(error).__name__,
                "error": str(error),
            },
            exc_info=True,
        )
    finally:
        try:
            client_socket.shutdown(socket.SHUT_WR)
        except OSError:
            pass
        client_socket.close()
        lifecycle.release_connection(client_socket)
        WORKER_LOGGER.debug(
            "Socket closed", extra={"event": "socket_closed", "client": client_address}
        )
