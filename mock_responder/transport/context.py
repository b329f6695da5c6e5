"""Context object shared across worker threads."""

from dataclasses import dataclass

from mock_responder.bootstrap.config import ResponderConfig
from mock_responder.lifecycle.state import ServerLifecycle


@dataclass(frozen=True)
class WorkerContext:
    """Dependencies shared across handler threads."""

    config: ResponderConfig
    lifecycle: ServerLifecycle
