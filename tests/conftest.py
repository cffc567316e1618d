"""Pytest configuration and fixtures for api-courier tests.

This file provides:
- RecordingTransport: httpx.MockTransport that records requests and replies
  from a per-test route table or handler
- PortReservation: Race-free port allocation for test servers
- MockServer: Subprocess management for the FastAPI mock server
- Fixtures: courier factories wired to the recording transport
"""

from __future__ import annotations

import socket
import subprocess
import sys
import threading
import time
from pathlib import Path
from typing import Any, Callable, Generator

import httpx
import pytest

from api_courier.client import Courier

# Project root for fixture paths
PROJECT_ROOT = Path(__file__).parent.parent
MOCK_SERVER_MODULE = "tests.integration.mock_server"

BASE_URL = "https://api.example.com"

Handler = Callable[[httpx.Request], httpx.Response]


class RecordingTransport(httpx.MockTransport):
    """MockTransport that records every request it receives.

    Routes are keyed by (method, path). A route value is either an
    httpx.Response, an exception instance to raise, or a handler callable.
    Unrouted requests get a 404.
    """

    def __init__(self) -> None:
        super().__init__(self._dispatch)
        self.requests: list[httpx.Request] = []
        self.routes: dict[tuple[str, str], httpx.Response | Exception | Handler] = {}
        self._lock = threading.Lock()

    def route(
        self,
        method: str,
        path: str,
        reply: httpx.Response | Exception | Handler,
    ) -> None:
        self.routes[(method.upper(), path)] = reply

    @property
    def paths(self) -> list[str]:
        with self._lock:
            return [request.url.path for request in self.requests]

    def _dispatch(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.requests.append(request)
        reply = self.routes.get((request.method, request.url.path))
        if reply is None:
            return httpx.Response(404, json={"error": "not routed"})
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, httpx.Response):
            # Fresh copy per request: a response object can only be sent once
            return httpx.Response(reply.status_code, headers=reply.headers, content=reply.content)
        return reply(request)


def connect_error(request_path: str = "/") -> httpx.ConnectError:
    """An offline-classified transport failure."""
    return httpx.ConnectError(
        "[Errno 101] Network is unreachable",
        request=httpx.Request("GET", f"{BASE_URL}{request_path}"),
    )


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def make_courier(transport: RecordingTransport) -> Generator[Callable[..., Courier], None, None]:
    """Factory for couriers bound to the recording transport; all are closed at teardown."""
    created: list[Courier] = []

    def _make(**kwargs: Any) -> Courier:
        kwargs.setdefault("base_url", BASE_URL)
        kwargs.setdefault("transport", transport)
        courier = Courier(**kwargs)
        created.append(courier)
        return courier

    yield _make

    for courier in created:
        courier.close()


@pytest.fixture
def courier(make_courier: Callable[..., Courier]) -> Courier:
    return make_courier()


class PortReservation:
    """Holds a reserved port with socket kept open to prevent races.

    The port is held exclusively until release(); the server binds right after.
    """

    def __init__(self) -> None:
        self._socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._socket.bind(("127.0.0.1", 0))  # Port 0 = OS assigns ephemeral port
        self._port = self._socket.getsockname()[1]
        self._released = False

    @property
    def port(self) -> int:
        return self._port

    def release(self) -> int:
        """Release the socket and return the port for server use.

        Safe to call multiple times - subsequent calls are no-ops.
        """
        if not self._released:
            self._socket.close()
            self._released = True
        return self._port

    def __enter__(self) -> PortReservation:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.release()


def wait_for_server_ready(host: str, port: int, timeout: float = 10.0) -> bool:
    """Block until server accepts TCP connections, or timeout expires."""
    start = time.time()
    while time.time() - start < timeout:
        try:
            with socket.create_connection((host, port), timeout=1.0):
                return True
        except OSError:
            time.sleep(0.1)
    return False


class MockServer:
    """Manages the FastAPI mock server subprocess for integration tests."""

    def __init__(self, port: int | PortReservation) -> None:
        if isinstance(port, PortReservation):
            self._reservation: PortReservation | None = port
            self.port = port.port
        else:
            self._reservation = None
            self.port = port
        self.host = "127.0.0.1"
        self.base_url = f"http://{self.host}:{self.port}"
        self._process: subprocess.Popen | None = None

    def start(self) -> None:
        """Start the mock server subprocess.

        Raises:
            RuntimeError: If server fails to start within 10 seconds.
        """
        if self._reservation:
            self._reservation.release()

        self._process = subprocess.Popen(
            [
                sys.executable, "-m", MOCK_SERVER_MODULE,
                "--host", self.host,
                "--port", str(self.port),
            ],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=PROJECT_ROOT,
        )

        if not wait_for_server_ready(self.host, self.port):
            stderr = ""
            if self._process and self._process.stderr:
                stderr = self._process.stderr.read().decode(errors="replace")
            self.stop()
            raise RuntimeError(
                f"MockServer failed to start on port {self.port}. stderr: {stderr or '(empty)'}"
            )

    def stop(self) -> None:
        """Stop the mock server subprocess: SIGTERM, then SIGKILL after 5s."""
        if self._process:
            self._process.terminate()
            try:
                self._process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self._process.kill()
                self._process.wait(timeout=5)
            self._process = None

    def __enter__(self) -> MockServer:
        self.start()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.stop()


@pytest.fixture(scope="session")
def mock_server() -> Generator[MockServer, None, None]:
    """Session-scoped FastAPI mock server."""
    with MockServer(PortReservation()) as server:
        yield server


# =============================================================================
# Pytest Hooks
# =============================================================================


def pytest_collection_modifyitems(
    config: pytest.Config, items: list[pytest.Item]
) -> None:
    """Tag tests as integration or unit based on their directory.

        pytest -m integration  # only integration tests
        pytest -m unit         # only unit tests
    """
    for item in items:
        test_path = Path(item.fspath)
        if "integration" in test_path.parts:
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)
