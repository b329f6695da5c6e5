"""HTTP input/output operations on client sockets."""

import logging
import re
import socket
from typing import Optional, Tuple

from mock_responder.bootstrap.config import HEADER_DELIMITER, MAX_HEADER_BYTES
from mock_responder.domain.correlation_id import CorrelationLoggerAdapter
from mock_responder.domain.http_types import (
    HttpResponse,
    IncomingRequest,
    canonical_header_key,
)

IO_LOGGER = CorrelationLoggerAdapter(logging.getLogger("mock_responder.io"), {})

CRLF = b"\r\n"
RECV_SIZE = 4096
_METHOD_PATTERN = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")
_VERSION_PATTERN = re.compile(r"^HTTP/1\.[0-9]$")
_CHUNK_SIZE_PATTERN = re.compile(rb"^[0-9A-Fa-f]+$")


class MalformedRequest(ValueError):
    """Raised when the request cannot be parsed as HTTP/1.x."""


class RequestEntityTooLarge(Exception):
    """Raised when a request body exceeds the configured limit."""


class RequestHeaderFieldsTooLarge(Exception):
    """Raised when the request line and headers exceed ``MAX_HEADER_BYTES``."""


def parse_request_line(request_line: str) -> Tuple[str, str, str]:
    """Split the request line into method, target and protocol version."""
    if "\r" in request_line or "\n" in request_line:
        raise MalformedRequest("Line break inside request line")
    parts = request_line.split(" ")
    if len(parts) != 3:
        raise MalformedRequest("Invalid request line")
    method, target, version = parts
    if not _METHOD_PATTERN.match(method):
        raise MalformedRequest("Invalid method")
    if not target:
        raise MalformedRequest("Empty request target")
    if not _VERSION_PATTERN.match(version):
        raise MalformedRequest("Unsupported protocol version")
    return method, target, version


def parse_headers(lines: list[str]) -> tuple[tuple[str, str], ...]:
    """Convert raw header lines into canonical ``(name, value)`` pairs in order."""
    parsed = []
    for line in lines:
        if not line:
            continue
        if line[0] in " \t":
            raise MalformedRequest("Obsolete header line folding")
        name, separator, value = line.partition(":")
        if not separator or not name or name != name.strip():
            raise MalformedRequest("Invalid header line")
        if "\r" in value or "\n" in value:
            raise MalformedRequest("Line break inside header value")
        parsed.append((canonical_header_key(name), value.strip(" \t")))
    return tuple(parsed)


def _fill(client_socket: socket.socket, buffer: bytes, size: int) -> Optional[bytes]:
    """Read until ``buffer`` holds at least ``size`` bytes; None on disconnect."""
    while len(buffer) < size:
        chunk = client_socket.recv(RECV_SIZE)
        if not chunk:
            return None
        buffer += chunk
    return buffer


def _read_line(
    client_socket: socket.socket, buffer: bytes
) -> Tuple[Optional[bytes], bytes]:
    while CRLF not in buffer:
        if len(buffer) > MAX_HEADER_BYTES:
            raise MalformedRequest("Chunk line too long")
        chunk = client_socket.recv(RECV_SIZE)
        if not chunk:
            return None, b""
        buffer += chunk
    line, rest = buffer.split(CRLF, 1)
    return line, rest


def _read_chunked_body(
    client_socket: socket.socket, buffer: bytes, max_body_bytes: int
) -> Tuple[Optional[bytes], bytes]:
    body = bytearray()
    while True:
        line, buffer = _read_line(client_socket, buffer)
        if line is None:
            return None, b""
        size_text = line.split(b";", 1)[0].strip()
        if not _CHUNK_SIZE_PATTERN.match(size_text):
            raise MalformedRequest("Invalid chunk size")
        size = int(size_text, 16)
        if size == 0:
            break
        if len(body) + size > max_body_bytes:
            raise RequestEntityTooLarge
        filled = _fill(client_socket, buffer, size + len(CRLF))
        if filled is None:
            return None, b""
        if filled[size : size + len(CRLF)] != CRLF:
            raise MalformedRequest("Missing chunk terminator")
        body += filled[:size]
        buffer = filled[size + len(CRLF) :]

    # Trailer section, ignored.
    while True:
        line, buffer = _read_line(client_socket, buffer)
        if line is None:
            return None, b""
        if not line:
            return bytes(body), buffer


def determine_content_length(
    headers: tuple[tuple[str, str], ...], max_body_bytes: int
) -> int:
    """Validate and return the declared Content-Length for the request."""
    declared = {value for name, value in headers if name == "Content-Length"}
    if not declared:
        return 0
    if len(declared) != 1:
        raise MalformedRequest("Conflicting Content-Length headers")
    header_value = declared.pop()
    if not header_value.isdigit():
        raise MalformedRequest("Invalid Content-Length")
    content_length = int(header_value)
    if content_length > max_body_bytes:
        raise RequestEntityTooLarge
    return content_length


def _read_body(
    client_socket: socket.socket,
    headers: tuple[tuple[str, str], ...],
    remainder: bytes,
    max_body_bytes: int,
) -> Tuple[Optional[bytes], bytes]:
    encodings = [
        token.strip().lower()
        for name, value in headers
        if name == "Transfer-Encoding"
        for token in value.split(",")
        if token.strip()
    ]
    if encodings:
        if encodings[-1] != "chunked":
            raise MalformedRequest("Unsupported transfer encoding")
        return _read_chunked_body(client_socket, remainder, max_body_bytes)

    content_length = determine_content_length(headers, max_body_bytes)
    filled = _fill(client_socket, remainder, content_length)
    if filled is None:
        return None, b""
    return filled[:content_length], filled[content_length:]


def receive_request(
    client_socket: socket.socket,
    buffer: bytes,
    max_body_bytes: int,
    remote_addr: str = "",
) -> Tuple[Optional[IncomingRequest], bytes]:
    """Read bytes from the socket until a complete request is available.

    Returns ``(None, b"")`` when the peer closes the connection before a full
    request arrives, otherwise the request and any bytes already received
    for the next pipelined request.
    """
    buffer = buffer.lstrip(CRLF)
    while HEADER_DELIMITER not in buffer:
        if len(buffer) > MAX_HEADER_BYTES:
            raise RequestHeaderFieldsTooLarge
        chunk = client_socket.recv(RECV_SIZE)
        if not chunk:
            return None, b""
        buffer = (buffer + chunk).lstrip(CRLF)

    header_block, remainder = buffer.split(HEADER_DELIMITER, 1)
    if len(header_block) > MAX_HEADER_BYTES:
        raise RequestHeaderFieldsTooLarge
    header_lines = header_block.decode("latin-1").split("\r\n")
    method, target, version = parse_request_line(header_lines[0])
    headers = parse_headers(header_lines[1:])

    body, leftover = _read_body(client_socket, headers, remainder, max_body_bytes)
    if body is None:
        return None, b""

    IO_LOGGER.debug(
        "Parsed request",
        extra={"method": method, "path": target, "bytes_in": len(body)},
    )
    return IncomingRequest(method, target, version, headers, body, remote_addr), leftover


def serialize_response(response: HttpResponse) -> bytes:
    """Render the status line, headers and (unless suppressed) body."""
    headers = list(response.headers)
    headers.append(("Content-Length", str(len(response.body))))
    if response.close_connection:
        headers.append(("Connection", "close"))
    header_lines = [response.status_line]
    header_lines.extend(f"{name}: {value}" for name, value in headers)
    header_block = "\r\n".join(header_lines).encode("latin-1") + HEADER_DELIMITER
    if response.suppress_body:
        return header_block
    return header_block + response.body


def send_response(client_socket: socket.socket, response: HttpResponse) -> int:
    """Serialize and send the HTTP response, returning the bytes written."""
    payload = serialize_response(response)
    client_socket.sendall(payload)
    IO_LOGGER.debug(
        "Sent response",
        extra={"status_code": response.status, "bytes_out": len(payload)},
    )
    return len(payload)
