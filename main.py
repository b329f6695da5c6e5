"""Mock HTTP responder answering every request with a configured status."""

import logging
import platform
import sys
from typing import Optional

from mock_responder.bootstrap.config import (
    VERSION,
    ResponderConfig,
    build_config,
    parse_cli_args,
)
from mock_responder.bootstrap.logging_setup import configure_logging
from mock_responder.domain.correlation_id import CorrelationLoggerAdapter
from mock_responder.lifecycle.server import ResponderServer, install_signal_handlers

SERVER_LOGGER = CorrelationLoggerAdapter(logging.getLogger("mock_responder.server"), {})


def enabled_stages(config: ResponderConfig) -> list[str]:
    """Names of the optional pipeline stages switched on, in evaluation order."""
    toggles = [
        ("check-auth-subject", config.check_auth_subject_enabled),
        ("check-request-method", config.check_method_enabled),
        ("copy-auth-header", config.copy_header_enabled),
    ]
    return [name for name, enabled in toggles if enabled]


def main(argv: Optional[list[str]] = None) -> int:
    """Start the responder and block until it has shut down."""
    args = parse_cli_args(sys.argv[1:] if argv is None else argv)
    configure_logging(args.log_level, args.log_destination, args.log_format == "json")
    config = build_config(args)

    SERVER_LOGGER.info(
        "Starting mock responder",
        extra={
            "event": "server_starting",
            "version": VERSION,
            "python_version": platform.python_version(),
            "listen": config.listen_address,
            "status_code": config.response_status,
            "shutdown_timeout": config.shutdown_timeout,
            "pipeline": enabled_stages(config),
            "log_destination": args.log_destination,
            "log_level": args.log_level,
        },
    )

    server = ResponderServer(config)
    install_signal_handlers(server.lifecycle)
    try:
        server.start()
    except OSError as error:
        SERVER_LOGGER.critical(
            "Failed to bind listener",
            extra={
                "event": "bind_failed",
                "listen": config.listen_address,
                "error_type": type(error).__name__,
                "errno": error.errno,
            },
        )
        sys.exit(f"failed to start server: {error}")

    return server.serve_until_signal()


if __name__ == "__main__":
    sys.exit(main())
