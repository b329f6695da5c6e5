"""Main connection acceptance loop."""

import errno
import logging
import socket
import threading
import time

from mock_responder.domain.correlation_id import CorrelationLoggerAdapter
from mock_responder.transport.context import WorkerContext
from mock_responder.transport.worker import handle_client

ACCEPT_LOGGER = CorrelationLoggerAdapter(
    logging.getLogger("mock_responder.transport.accept"), {}
)

TEMPORARY_ACCEPT_ERRNOS = frozenset(
    {errno.EMFILE, errno.ENFILE, errno.ENOBUFS, errno.ENOMEM}
)
MIN_ACCEPT_BACKOFF = 0.005
MAX_ACCEPT_BACKOFF = 1.0


def format_address(address) -> str:
    """Render a socket address as ``host:port`` (``[host]:port`` for IPv6)."""
    host, port = address[0], address[1]
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def is_temporary_accept_error(error: OSError) -> bool:
    """True for accept failures that clear up on their own."""
    return isinstance(error, ConnectionAbortedError) or error.errno in TEMPORARY_ACCEPT_ERRNOS


def _start_worker(
    client_socket: socket.socket, client_address: str, context: WorkerContext
) -> None:
    """Hand an accepted connection to its own worker thread."""
    if ACCEPT_LOGGER.logger.isEnabledFor(logging.DEBUG):
        ACCEPT_LOGGER.debug(
            "Client connection accepted",
            extra={"event": "client_accepted", "client": client_address},
        )

    context.lifecycle.register_connection(client_socket)
    thread = threading.Thread(
        target=handle_client,
        args=(client_socket, client_address, context),
        name=f"conn-{client_address}",
        daemon=False,
    )
    try:
        thread.start()
    except RuntimeError as error:
        ACCEPT_LOGGER.error(
            "Could not start connection worker",
            extra={"event": "worker_error", "client": client_address, "error": str(error)},
        )
        client_socket.close()
        context.lifecycle.release_connection(client_socket)


def run_accept_loop(server_socket: socket.socket, context: WorkerContext) -> None:
    """Accept connections until draining begins or the listener fails.

    The listening socket is closed on exit. A non-temporary accept error is
    recorded on the lifecycle, which wakes the main thread.
    """
    lifecycle = context.lifecycle
    backoff = 0.0
    try:
        while not lifecycle.should_stop():
            try:
                client_socket, client_address = server_socket.accept()
            except socket.timeout:
                continue
            except OSError as error:
                if lifecycle.should_stop():
                    break
                if is_temporary_accept_error(error):
                    backoff = (
                        MIN_ACCEPT_BACKOFF
                        if backoff == 0
                        else min(backoff * 2, MAX_ACCEPT_BACKOFF)
                    )
                    ACCEPT_LOGGER.warning(
                        "Temporary accept failure",
                        extra={
                            "event": "accept_retry",
                            "error_type": type(error).__name__,
                            "errno": error.errno,
                            "retry_in_ms": int(backoff * 1000),
                        },
                    )
                    time.sleep(backoff)
                    continue
                ACCEPT_LOGGER.error(
                    "Socket accept failed",
                    extra={
                        "event": "accept_error",
                        "error_type": type(error).__name__,
                        "errno": error.errno,
                        "error": str(error),
                    },
                )
                lifecycle.fail(error)
                return
            backoff = 0.0

            if lifecycle.should_stop():
                client_socket.close()
                break

            _start_worker(client_socket, format_address(client_address), context)
    finally:
        server_socket.close()
