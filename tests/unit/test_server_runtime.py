"""In-process tests for the listener, the workers and graceful shutdown."""

import errno
import signal
import socket
import threading
import time
from unittest.mock import Mock

import pytest

from mock_responder.bootstrap.config import ResponderConfig
from mock_responder.lifecycle.server import ResponderServer
from mock_responder.lifecycle.state import LifecycleState, ServerLifecycle
from mock_responder.transport import accept_loop
from mock_responder.transport.accept_loop import format_address, run_accept_loop
from mock_responder.transport.context import WorkerContext
from tests.utils.http import (
    build_request,
    connection_closed,
    exchange,
    read_http_response,
)

HOST = "127.0.0.1"


def wait_until(predicate, timeout: float = 5.0) -> None:
    """Poll ``predicate`` until it holds or fail the test."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.01)
    pytest.fail("condition not reached in time")


@pytest.fixture(name="start_server")
def _start_server():
    """Start in-process responders on an ephemeral port; stop them afterwards."""
    servers = []

    def start(**overrides) -> ResponderServer:
        config = ResponderConfig(listen_address=f"{HOST}:0", **overrides)
        server = ResponderServer(config)
        server.start()
        servers.append(server)
        return server

    yield start

    for server in servers:
        if server.lifecycle.state is not LifecycleState.STOPPED:
            server.shutdown(0)


class TestServing:
    """Requests answered by a running server."""

    def test_answers_with_configured_status(self, start_server):
        server = start_server(response_status=202)
        response = exchange(HOST, server.port, build_request())
        assert response.status_line == "HTTP/1.1 202 Accepted"
        assert response.body == b"Accepted"
        assert response.header("Content-Type") == "text/plain; charset=utf-8"
        assert response.header("Date") is not None
        assert server.lifecycle.state is LifecycleState.LISTENING

    def test_propagates_credentials(self, start_server):
        server = start_server(copy_header_enabled=True)
        payload = build_request(
            headers=[("authorization", "Bearer t"), ("x-auth-role", "admin")]
        )
        response = exchange(HOST, server.port, payload)
        assert response.header_values("Authorization") == ["Bearer t"]
        assert response.header_values("X-Auth-Role") == ["admin"]

    def test_serves_several_requests_on_one_connection(self, start_server):
        server = start_server()
        with socket.create_connection((HOST, server.port), timeout=5) as sock:
            for _ in range(3):
                sock.sendall(build_request())
                assert read_http_response(sock).status_code == 200

    def test_malformed_request_gets_bad_request(self, start_server):
        server = start_server()
        response = exchange(HOST, server.port, b"NONSENSE\r\n\r\n")
        assert response.status_code == 400
        assert response.header("Connection") == "close"

    def test_oversized_body_gets_payload_too_large(self, start_server):
        server = start_server(max_body_bytes=4)
        response = exchange(HOST, server.port, build_request("POST", body=b"too big"))
        assert response.status_code == 413


class TestShutdown:
    """Draining, timeouts and the signal-driven exit path."""

    def test_idle_keep_alive_connection_is_closed(self, start_server):
        server = start_server()
        with socket.create_connection((HOST, server.port), timeout=5) as sock:
            sock.sendall(build_request())
            assert read_http_response(sock).status_code == 200

            started = time.monotonic()
            assert server.shutdown(5.0) is True
            assert time.monotonic() - started < 4.0
            assert connection_closed(sock)
        assert server.lifecycle.state is LifecycleState.STOPPED

    def test_in_flight_request_completes(self, start_server):
        server = start_server()
        with socket.create_connection((HOST, server.port), timeout=5) as sock:
            sock.sendall(b"GET / HTTP/1.1\r\nHost: localhost\r\n")
            wait_until(lambda: server.lifecycle.active_connection_count() == 1)

            results = []
            stopper = threading.Thread(
                target=lambda: results.append(server.shutdown(5.0))
            )
            stopper.start()
            wait_until(server.lifecycle.is_draining)

            sock.sendall(b"\r\n")
            response = read_http_response(sock)
            stopper.join(timeout=10)

        assert response.status_code == 200
        assert response.header("Connection") == "close"
        assert results == [True]

    def test_new_connections_refused_after_shutdown(self, start_server):
        server = start_server()
        port = server.port
        assert server.shutdown(1.0) is True
        with pytest.raises(OSError):
            socket.create_connection((HOST, port), timeout=1).close()

    def test_timeout_force_closes_hanging_connection(self, start_server, caplog):
        server = start_server()
        with socket.create_connection((HOST, server.port), timeout=5) as sock:
            sock.sendall(b"GET / HTTP/1.1\r\n")
            wait_until(lambda: server.lifecycle.active_connection_count() == 1)

            assert server.shutdown(0.2) is False
            assert connection_closed(sock)

        events = [getattr(r, "event", None) for r in caplog.records]
        assert "shutdown_timeout" in events
        assert "connections_force_closed" in events
        assert server.lifecycle.state is LifecycleState.STOPPED

    def test_serve_until_signal_exits_cleanly(self, start_server):
        server = start_server(shutdown_timeout=1.0)
        threading.Timer(
            0.05, server.lifecycle.notify_signal, args=(signal.SIGTERM,)
        ).start()
        assert server.serve_until_signal() == 0
        assert server.lifecycle.state is LifecycleState.STOPPED

    def test_serve_until_signal_reports_listener_failure(self, start_server):
        server = start_server()
        threading.Timer(
            0.05, server.lifecycle.fail, args=(OSError(errno.EBADF, "broken"),)
        ).start()
        assert server.serve_until_signal() == 1
        assert server.lifecycle.state is LifecycleState.STOPPED


class TestAcceptLoop:
    """Error handling of the accept loop with a stubbed listener."""

    def test_fatal_accept_error_fails_lifecycle(self):
        lifecycle = ServerLifecycle()
        lifecycle.mark_listening()
        error = OSError(errno.EBADF, "Bad file descriptor")
        listener = Mock(spec=socket.socket)
        listener.accept.side_effect = error

        run_accept_loop(listener, WorkerContext(ResponderConfig(), lifecycle))

        assert lifecycle.failure is error
        listener.close.assert_called_once()

    def test_temporary_errors_back_off_and_retry(self, monkeypatch):
        lifecycle = ServerLifecycle()
        lifecycle.mark_listening()
        sleeps = []
        monkeypatch.setattr(accept_loop.time, "sleep", sleeps.append)
        attempts = []

        def accept():
            attempts.append(1)
            if len(attempts) == 1:
                raise OSError(errno.EMFILE, "Too many open files")
            if len(attempts) == 2:
                raise ConnectionAbortedError()
            lifecycle.begin_draining()
            raise socket.timeout()

        listener = Mock(spec=socket.socket)
        listener.accept.side_effect = accept

        run_accept_loop(listener, WorkerContext(ResponderConfig(), lifecycle))

        assert sleeps == [0.005, 0.01]
        assert lifecycle.failure is None
        listener.close.assert_called_once()

    def test_connection_accepted_while_draining_is_closed(self):
        lifecycle = ServerLifecycle()
        lifecycle.mark_listening()
        client = Mock(spec=socket.socket)

        def accept():
            lifecycle.begin_draining()
            return client, ("127.0.0.1", 50000)

        listener = Mock(spec=socket.socket)
        listener.accept.side_effect = accept

        run_accept_loop(listener, WorkerContext(ResponderConfig(), lifecycle))

        client.close.assert_called_once()
        assert lifecycle.active_connection_count() == 0


@pytest.mark.parametrize(
    ("address", "rendered"),
    [
        (("127.0.0.1", 8080), "127.0.0.1:8080"),
        (("::1", 8080, 0, 0), "[::1]:8080"),
    ],
)
def test_format_address(address, rendered):
    """IPv6 hosts are bracketed."""
    assert format_address(address) == rendered
