"""Responder configuration and CLI argument parsing."""

import argparse
import math
import os
import re
from dataclasses import dataclass

VERSION = "1.0.0"

DEFAULT_LISTEN_ADDRESS = ":8080"
DEFAULT_STATUS = 200
DEFAULT_SHUTDOWN_TIMEOUT = "5s"
DEFAULT_MAX_BODY_BYTES = 5 * 1024 * 1024
MAX_HEADER_BYTES = 1 << 20
CONNECTION_TIMEOUT_SECONDS = 10.0

HEADER_DELIMITER = b"\r\n\r\n"
ALLOWED_METHODS = frozenset(
    {"DELETE", "GET", "HEAD", "OPTIONS", "PATCH", "POST", "PUT", "TRACE"}
)

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value is not None else default


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on"}


def parse_duration(text: str) -> float:
    """Return the number of seconds described by a duration string.

    Accepts a plain number of seconds (``2.5``) or a sequence of
    number/unit pairs (``1m30s``, ``1500ms``). Negative durations are
    rejected.
    """
    value = text.strip()
    if not value:
        raise ValueError("empty duration")
    if value.startswith("-"):
        raise ValueError(f"negative duration: {text!r}")
    value = value.lstrip("+")
    try:
        seconds = float(value)
    except ValueError:
        pass
    else:
        if not math.isfinite(seconds):
            raise ValueError(f"invalid duration: {text!r}")
        return seconds

    total = 0.0
    position = 0
    for match in _DURATION_PART.finditer(value):
        if match.start() != position:
            raise ValueError(f"invalid duration: {text!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position == 0 or position != len(value):
        raise ValueError(f"invalid duration: {text!r}")
    return total


def parse_listen_address(text: str) -> tuple[str, int]:
    """Split ``host:port`` into its parts; an empty host means all interfaces."""
    value = text.strip()
    host, separator, port_text = value.rpartition(":")
    if not separator:
        raise ValueError(f"missing port in address {text!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    elif ":" in host:
        raise ValueError(f"too many colons in address {text!r}")
    if not port_text.isdigit():
        raise ValueError(f"invalid port in address {text!r}")
    port = int(port_text)
    if port > 65535:
        raise ValueError(f"port out of range in address {text!r}")
    return host, port


def normalize_listen_address(text: str) -> str:
    """Validate a listen address and return it without surrounding whitespace."""
    parse_listen_address(text)
    return text.strip()


def parse_port(text: str) -> int:
    """Validate a bare TCP port number."""
    return parse_listen_address(f":{text.strip()}")[1]


def parse_status(text: str) -> int:
    """Validate a response status code."""
    status = int(text)
    if not 100 <= status <= 999:
        raise ValueError(f"status code out of range: {status}")
    return status


def _argument_type(parser_func, label: str):
    def convert(text: str):
        try:
            return parser_func(text)
        except ValueError as exc:
            raise argparse.ArgumentTypeError(f"invalid {label} {text!r}: {exc}") from exc

    return convert


@dataclass(frozen=True)
class ResponderConfig:
    """Immutable settings read by every request handler without locking."""

    listen_address: str = DEFAULT_LISTEN_ADDRESS
    response_status: int = DEFAULT_STATUS
    shutdown_timeout: float = 5.0
    debug_enabled: bool = False
    access_log_enabled: bool = False
    copy_header_enabled: bool = False
    check_auth_subject_enabled: bool = False
    check_method_enabled: bool = False
    allowed_methods: frozenset[str] = ALLOWED_METHODS
    max_body_bytes: int = DEFAULT_MAX_BODY_BYTES

    def __post_init__(self) -> None:
        object.__setattr__(self, "allowed_methods", frozenset(self.allowed_methods))

    @property
    def bind_address(self) -> tuple[str, int]:
        """Return the ``(host, port)`` pair for the listening socket."""
        return parse_listen_address(self.listen_address)


def parse_cli_args(argv: list[str]) -> argparse.Namespace:
    """Return parsed CLI arguments for responder configuration."""
    parser = argparse.ArgumentParser(
        prog="mock-responder",
        description="Answer every HTTP request with a configured status code",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")

    address_group = parser.add_mutually_exclusive_group()
    address_group.add_argument(
        "--listen",
        type=_argument_type(normalize_listen_address, "address"),
        default=os.getenv("MOCK_RESPONDER_LISTEN", DEFAULT_LISTEN_ADDRESS),
        help="Bind address as [host]:port (default: :8080)",
    )
    address_group.add_argument(
        "--port",
        type=_argument_type(parse_port, "port"),
        default=None,
        help="Port to listen on, shorthand for --listen :PORT",
    )
    parser.add_argument(
        "--status",
        type=_argument_type(parse_status, "status"),
        default=_env_int("MOCK_RESPONDER_STATUS", DEFAULT_STATUS),
        help="HTTP status returned for accepted requests",
    )
    parser.add_argument(
        "--timeout",
        type=_argument_type(parse_duration, "duration"),
        default=os.getenv("MOCK_RESPONDER_TIMEOUT", DEFAULT_SHUTDOWN_TIMEOUT),
        help="Graceful shutdown timeout, e.g. 5s or 1500ms",
    )
    parser.add_argument(
        "--debug",
        action=argparse.BooleanOptionalAction,
        default=_env_bool("MOCK_RESPONDER_DEBUG", False),
        help="Log a full dump of every request",
    )
    parser.add_argument(
        "--access-log",
        action=argparse.BooleanOptionalAction,
        default=_env_bool("MOCK_RESPONDER_ACCESS_LOG", False),
        help="Log one compact line per request",
    )
    parser.add_argument(
        "--copy-auth-header",
        action=argparse.BooleanOptionalAction,
        default=_env_bool("MOCK_RESPONDER_COPY_AUTH_HEADER", False),
        help="Copy Authorization and X-Auth-* request headers to the response",
    )
    parser.add_argument(
        "--check-auth-subject",
        action=argparse.BooleanOptionalAction,
        default=_env_bool("MOCK_RESPONDER_CHECK_AUTH_SUBJECT", False),
        help="Reject requests without an X-Auth-Subject header",
    )
    parser.add_argument(
        "--check-request-method",
        action=argparse.BooleanOptionalAction,
        default=_env_bool("MOCK_RESPONDER_CHECK_REQUEST_METHOD", False),
        help="Reject requests whose method is not a standard HTTP method",
    )
    parser.add_argument(
        "--max-body-bytes",
        type=int,
        default=_env_int("MOCK_RESPONDER_MAX_BODY_BYTES", DEFAULT_MAX_BODY_BYTES),
        help="Largest request body accepted before answering 413",
    )
    default_log_level = os.getenv("MOCK_RESPONDER_LOG_LEVEL", "INFO").upper()
    default_destination = os.getenv("MOCK_RESPONDER_LOG_DESTINATION", "stdout")
    parser.add_argument(
        "--log-level",
        default=default_log_level,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        type=str.upper,
    )
    parser.add_argument(
        "--log-destination",
        default=default_destination,
        help="stdout, stderr or a file path",
    )
    parser.add_argument(
        "--log-format",
        default=os.getenv("MOCK_RESPONDER_LOG_FORMAT", "json").lower(),
        choices=["json", "text"],
        type=str.lower,
    )
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> ResponderConfig:
    """Freeze parsed CLI arguments into the configuration shared by handlers."""
    listen_address = args.listen if args.port is None else f":{args.port}"
    return ResponderConfig(
        listen_address=listen_address,
        response_status=args.status,
        shutdown_timeout=args.timeout,
        debug_enabled=args.debug,
        access_log_enabled=args.access_log,
        copy_header_enabled=args.copy_auth_header,
        check_auth_subject_enabled=args.check_auth_subject,
        check_method_enabled=args.check_request_method,
        max_body_bytes=args.max_body_bytes,
    )
