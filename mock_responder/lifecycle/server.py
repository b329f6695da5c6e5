"""Listener ownership, background serving and the graceful-shutdown protocol."""

import logging
import signal
import socket
import threading
from typing import Optional

from mock_responder.bootstrap.config import ResponderConfig
from mock_responder.bootstrap.socket_factory import (
    ACCEPT_POLL_INTERVAL,
    create_server_socket,
)
from mock_responder.domain.correlation_id import CorrelationLoggerAdapter
from mock_responder.lifecycle.state import LifecycleState, ServerLifecycle
from mock_responder.transport.accept_loop import format_address, run_accept_loop
from mock_responder.transport.context import WorkerContext

SERVER_LOGGER = CorrelationLoggerAdapter(logging.getLogger("mock_responder.server"), {})

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def install_signal_handlers(lifecycle: ServerLifecycle) -> None:
    """Route SIGINT and SIGTERM to the lifecycle; must run on the main thread."""

    def shutdown_handler(signum: int, _frame) -> None:
        lifecycle.notify_signal(signum)

    for signum in SHUTDOWN_SIGNALS:
        signal.signal(signum, shutdown_handler)


class ResponderServer:
    """Owns the listening socket and drives it through the lifecycle states."""

    def __init__(
        self, config: ResponderConfig, lifecycle: Optional[ServerLifecycle] = None
    ) -> None:
        self.config = config
        self.lifecycle = lifecycle if lifecycle is not None else ServerLifecycle()
        self._server_socket: Optional[socket.socket] = None
        self._accept_thread: Optional[threading.Thread] = None
        self.server_address: Optional[tuple] = None

    def start(self) -> None:
        """Bind the listener and start accepting on a background thread.

        Raises ``OSError`` when the address cannot be bound.
        """
        host, port = self.config.bind_address
        self._server_socket = create_server_socket(host, port)
        self.server_address = self._server_socket.getsockname()
        context = WorkerContext(config=self.config, lifecycle=self.lifecycle)
        self._accept_thread = threading.Thread(
            target=run_accept_loop,
            args=(self._server_socket, context),
            name="accept-loop",
            daemon=False,
        )
        self._accept_thread.start()
        self.lifecycle.mark_listening()
        SERVER_LOGGER.info(
            "Server listening for connections",
            extra={
                "event": "server_listening",
                "listen": format_address(self.server_address),
                "host": self.server_address[0],
                "port": self.server_address[1],
            },
        )

    @property
    def port(self) -> int:
        if self.server_address is None:
            raise RuntimeError("server has not been started")
        return self.server_address[1]

    def shutdown(self, timeout: float) -> bool:
        """Stop accepting, drain in-flight requests, force-close after ``timeout``.

        Returns True when every connection finished on its own.
        """
        if self.lifecycle.state is LifecycleState.STOPPED:
            return True
        self.lifecycle.begin_draining()
        if self._accept_thread is not None:
            self._accept_thread.join(timeout=ACCEPT_POLL_INTERVAL * 10)

        SERVER_LOGGER.info(
            "Waiting for active connections to complete",
            extra={
                "event": "shutdown_waiting",
                "shutdown_timeout": timeout,
                "active_connections": self.lifecycle.active_connection_count(),
            },
        )
        drained = self.lifecycle.wait_for_connections(timeout)
        if not drained:
            closed = self.lifecycle.force_close_connections()
            SERVER_LOGGER.warning(
                "Couldn't gracefully shutdown server, closed remaining connections",
                extra={"event": "connections_force_closed", "closed_connections": closed},
            )
        self.lifecycle.mark_stopped()
        SERVER_LOGGER.info(
            "Server shutdown complete",
            extra={"event": "server_stopped", "drained": drained},
        )
        return drained

    def abort(self) -> None:
        """Tear down after a fatal listener error without waiting for requests."""
        self.lifecycle.begin_draining()
        self.lifecycle.force_close_connections()
        self.lifecycle.mark_stopped()

    def serve_until_signal(self) -> int:
        """Block until SIGINT/SIGTERM or a listener failure; return the exit status."""
        signum = self.lifecycle.wait_for_signal()
        failure = self.lifecycle.failure
        if failure is not None:
            SERVER_LOGGER.critical(
                "Listener failed, exiting",
                extra={
                    "event": "accept_error",
                    "error_type": type(failure).__name__,
                    "error": str(failure),
                },
            )
            self.abort()
            return 1

        SERVER_LOGGER.info(
            "Received shutdown signal",
            extra={"event": "shutdown_signal", "signal": signum},
        )
        self.shutdown(self.config.shutdown_timeout)
        return 0
