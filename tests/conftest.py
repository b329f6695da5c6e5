"""Shared pytest fixtures for integration and unit tests."""

from __future__ import annotations

import subprocess
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Generator, TypedDict

import pytest

from tests.utils.http import reserve_port
from tests.utils.logs import wait_for_log_event

if TYPE_CHECKING:
    from _pytest.tmpdir import TempPathFactory

PROJECT_ROOT = Path(__file__).resolve().parent.parent
SERVER_ENTRYPOINT = PROJECT_ROOT / "main.py"
STARTUP_TIMEOUT = 10.0


class ServerProcessInfo(TypedDict):
    """Metadata describing a running responder fixture instance."""

    base_url: str
    host: str
    port: int
    process: subprocess.Popen[str]
    log_file: Path


def _responder_command(host: str, port: int, log_file: Path, extra_args) -> list[str]:
    return [
        sys.executable,
        str(SERVER_ENTRYPOINT),
        "--listen",
        f"{host}:{port}",
        "--log-destination",
        str(log_file),
        *extra_args,
    ]


def _launch_server(
    host: str, port: int, log_file: Path, extra_args: tuple[str, ...] = ()
) -> Generator[ServerProcessInfo, None, None]:
    """Run one responder until the generator is exhausted.

    Readiness is the ``server_listening`` log event, so no readiness connection
    shows up in the log of the process under test.
    """

    with subprocess.Popen(
        _responder_command(host, port, log_file, extra_args),
        cwd=PROJECT_ROOT,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    ) as process:
        if not wait_for_log_event(
            log_file, "server_listening", STARTUP_TIMEOUT, process
        ):
            process.terminate()
            stdout, stderr = process.communicate(timeout=5)
            raise RuntimeError(
                f"responder did not start on {host}:{port}\n"
                f"stdout:\n{stdout}\nstderr:\n{stderr}"
            )

        yield {
            "base_url": f"http://{host}:{port}",
            "host": host,
            "port": port,
            "process": process,
            "log_file": log_file,
        }

        if process.poll() is None:
            process.terminate()
        try:
            process.wait(timeout=10)
        except subprocess.TimeoutExpired:
            process.kill()


LaunchResponder = Callable[..., ServerProcessInfo]


@pytest.fixture(name="launch_responder")
def _launch_responder(
    tmp_path_factory: "TempPathFactory",
) -> Generator[LaunchResponder, None, None]:
    """Start responders with the given CLI flags; every one is stopped afterwards."""

    running: list[Generator[ServerProcessInfo, None, None]] = []

    def launch(*extra_args: str) -> ServerProcessInfo:
        host = "127.0.0.1"
        log_file = tmp_path_factory.mktemp("responder-logs") / "responder.log"
        instance = _launch_server(host, reserve_port(host), log_file, extra_args)
        info = next(instance)
        running.append(instance)
        return info

    yield launch

    for instance in running:
        for _ in instance:
            pass


@pytest.fixture(name="server_process")
def _server_process(launch_responder: LaunchResponder) -> ServerProcessInfo:
    """Launch the responder with default settings."""

    return launch_responder()


@pytest.fixture()
def base_url(server_process: ServerProcessInfo) -> str:
    """Expose the running responder base URL to integration tests."""

    return server_process["base_url"]
