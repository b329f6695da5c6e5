"""Server lifecycle state management."""

import logging
import socket
import threading
from enum import Enum
from typing import Optional

from mock_responder.domain.correlation_id import CorrelationLoggerAdapter

LIFECYCLE_LOGGER = CorrelationLoggerAdapter(
    logging.getLogger("mock_responder.lifecycle"), {}
)


class LifecycleState(Enum):
    """Process states; transitions only ever move forward."""

    LISTENING = "listening"
    DRAINING = "draining"
    STOPPED = "stopped"


def _shutdown_socket(sock: socket.socket) -> None:
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass


class ServerLifecycle:
    """Tracks the lifecycle state, open connections and the main-thread wake-up.

    Each connection is flagged active while a request is being read or
    answered and idle while waiting for the next keep-alive request. A newly
    accepted connection starts active so a request that is already on its
    way is never cut off by the drain.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._connections_changed = threading.Condition(self._lock)
        self._wakeup = threading.Event()
        self._state: Optional[LifecycleState] = None
        self._connections: dict[socket.socket, bool] = {}
        self._signal: Optional[int] = None
        self._failure: Optional[BaseException] = None

    @property
    def state(self) -> Optional[LifecycleState]:
        """Current state, ``None`` until the listener is bound."""
        with self._lock:
            return self._state

    @property
    def failure(self) -> Optional[BaseException]:
        return self._failure

    def mark_listening(self) -> None:
        """Enter ``LISTENING`` once the socket is bound and accepting."""
        with self._lock:
            if self._state is None:
                self._state = LifecycleState.LISTENING

    def mark_stopped(self) -> None:
        with self._lock:
            self._state = LifecycleState.STOPPED

    def should_stop(self) -> bool:
        """Check if the server should stop accepting new connections."""
        with self._lock:
            return self._state in (LifecycleState.DRAINING, LifecycleState.STOPPED)

    def is_draining(self) -> bool:
        """Check if the server is in draining mode."""
        with self._lock:
            return self._state is LifecycleState.DRAINING

    def notify_signal(self, signum: int) -> None:
        """Record a shutdown signal and wake the main thread.

        Safe to call from a signal handler: it takes no locks.
        """
        if self._signal is None:
            self._signal = signum
        self._wakeup.set()

    def fail(self, error: BaseException) -> None:
        """Record a fatal listener error and wake the main thread."""
        if self._failure is None:
            self._failure = error
        self._wakeup.set()

    def wait_for_signal(self, poll_interval: float = 0.5) -> Optional[int]:
        """Block until a signal or a fatal error arrives; return the signal number."""
        while not self._wakeup.wait(poll_interval):
            pass
        return self._signal

    def begin_draining(self) -> int:
        """Enter ``DRAINING`` and close idle keep-alive connections.

        Returns the number of idle connections that were closed.
        """
        with self._lock:
            if self._state in (LifecycleState.DRAINING, LifecycleState.STOPPED):
                return 0
            self._state = LifecycleState.DRAINING
            idle = [sock for sock, active in self._connections.items() if not active]
            active_count = len(self._connections) - len(idle)
        LIFECYCLE_LOGGER.info(
            "Beginning graceful shutdown",
            extra={
                "event": "draining_started",
                "active_connections": active_count,
                "closed_connections": len(idle),
            },
        )
        for sock in idle:
            _shutdown_socket(sock)
        return len(idle)

    def register_connection(self, sock: socket.socket) -> None:
        """Start tracking a freshly accepted connection."""
        with self._lock:
            self._connections[sock] = True

    def mark_active(self, sock: socket.socket) -> bool:
        """Flag a connection as serving a request.

        Refused for an idle connection once draining has begun, so the
        caller closes it instead of starting a new request.
        """
        with self._lock:
            if sock not in self._connections:
                return False
            draining = self._state in (LifecycleState.DRAINING, LifecycleState.STOPPED)
            if draining and not self._connections[sock]:
                return False
            self._connections[sock] = True
            return True

    def mark_idle(self, sock: socket.socket) -> bool:
        """Flag a connection as waiting for its next request.

        Returns False when the server is draining and the connection should
        be closed instead.
        """
        with self._lock:
            if sock not in self._connections:
                return False
            self._connections[sock] = False
            return self._state not in (LifecycleState.DRAINING, LifecycleState.STOPPED)

    def release_connection(self, sock: socket.socket) -> None:
        """Stop tracking a connection that has been closed."""
        with self._connections_changed:
            self._connections.pop(sock, None)
            self._connections_changed.notify_all()

    def active_connection_count(self) -> int:
        """Return the number of currently open connections."""
        with self._lock:
            return len(self._connections)

    def wait_for_connections(self, timeout: float) -> bool:
        """Wait for all connections to close within the timeout."""
        with self._connections_changed:
            drained = self._connections_changed.wait_for(
                lambda: not self._connections, timeout=max(0.0, timeout)
            )
            remaining = len(self._connections)
        if not drained:
            LIFECYCLE_LOGGER.warning(
                "Shutdown timeout exceeded",
                extra={
                    "event": "shutdown_timeout",
                    "remaining_connections": remaining,
                    "shutdown_timeout": timeout,
                },
            )
        return drained

    def force_close_connections(self) -> int:
        """Shut down every tracked connection; workers exit on their next I/O."""
        with self._lock:
            sockets = list(self._connections)
        for sock in sockets:
            _shutdown_socket(sock)
        return len(sockets)
