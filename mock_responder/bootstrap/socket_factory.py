"""Listening socket creation."""

import socket

ACCEPT_POLL_INTERVAL = 0.1


def create_server_socket(host: str, port: int) -> socket.socket:
    """Bind and listen on ``host:port``.

    An empty host binds every interface, dual-stack when the platform
    supports it. Bind failures propagate as ``OSError``.
    """
    if not host and socket.has_dualstack_ipv6():
        server_socket = socket.create_server(
            ("", port), family=socket.AF_INET6, dualstack_ipv6=True
        )
    else:
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        server_socket = socket.create_server((host, port), family=family)
    server_socket.settimeout(ACCEPT_POLL_INTERVAL)
    return server_socket
