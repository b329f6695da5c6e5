"""Shared HTTP type definitions to avoid circular imports."""

import re
import urllib.parse
from dataclasses import dataclass, field
from typing import Optional

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")

_TOKEN_CHARS = frozenset(
    "!#$%&'*+-.^_`|~0123456789"
    "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"
)


def canonical_header_key(name: str) -> str:
    """Return the canonical form of a header name (``x-auth-role`` -> ``X-Auth-Role``).

    Names containing characters outside the HTTP token set are returned
    unchanged.
    """
    if not name or any(char not in _TOKEN_CHARS for char in name):
        return name
    return "-".join(part[:1].upper() + part[1:].lower() for part in name.split("-"))


@dataclass(frozen=True)
class IncomingRequest:
    """Read-only view of one parsed HTTP request.

    ``headers`` keeps every header line in arrival order with canonical
    names, so repeated headers remain separate entries.
    """

    method: str
    target: str
    version: str
    headers: tuple[tuple[str, str], ...] = ()
    body: bytes = b""
    remote_addr: str = ""

    @property
    def path(self) -> str:
        """Decoded path component of the request target.

        Decoded control characters are escaped again as ``%XX`` so the path
        can be written into a single log line.
        """
        if self.target == "*":
            return self.target
        decoded = urllib.parse.unquote(urllib.parse.urlsplit(self.target).path) or "/"
        return _CONTROL_CHARS.sub(lambda match: f"%{ord(match.group()):02X}", decoded)

    def header_values(self, name: str) -> list[str]:
        """All values of ``name`` in arrival order."""
        wanted = canonical_header_key(name)
        return [value for header, value in self.headers if header == wanted]

    def header_map(self) -> dict[str, list[str]]:
        """Ordered multi-map of header name to values."""
        grouped: dict[str, list[str]] = {}
        for name, value in self.headers:
            grouped.setdefault(name, []).append(value)
        return grouped

    def has_header(self, name: str) -> bool:
        """True when a header with this exact canonical name is present."""
        wanted = canonical_header_key(name)
        return any(header == wanted for header, _ in self.headers)

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """First value of ``name`` or ``default``."""
        values = self.header_values(name)
        return values[0] if values else default


@dataclass
class HttpResponse:
    """Represents an HTTP response to be sent to a client."""

    status: int
    status_line: str
    headers: list[tuple[str, str]] = field(default_factory=list)
    body: bytes = b""
    close_connection: bool = False
    suppress_body: bool = False


def should_close(request: Optional[IncomingRequest]) -> bool:
    """Determine whether the connection should be closed after responding."""
    if request is None:
        return True
    tokens = {
        token.strip().lower()
        for value in request.header_values("Connection")
        for token in value.split(",")
    }
    if "close" in tokens:
        return True
    if request.version == "HTTP/1.0":
        return "keep-alive" not in tokens
    return False
