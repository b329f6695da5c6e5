"""Shared fixtures for unit tests."""

import logging

import pytest


@pytest.fixture(autouse=True)
def enable_log_propagation():
    """Ensure logs propagate to root so caplog can catch them.

    Handlers and level changes made by ``configure_logging`` inside a test
    are undone afterwards.
    """
    logger = logging.getLogger("mock_responder")
    old_propagate = logger.propagate
    old_level = logger.level
    old_handlers = list(logger.handlers)
    logger.propagate = True
    yield
    for handler in logger.handlers:
        if handler not in old_handlers:
            handler.close()
    logger.handlers[:] = old_handlers
    logger.setLevel(old_level)
    logger.propagate = old_propagate
