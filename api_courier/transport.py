"""Transport Selector - Chooses live or simulated execution per submission.

Decision table (evaluated once, before enqueue):

    execution mode | mock registered | result
    ---------------+-----------------+-------------------------------------
    live           | any             | live transport
    partial        | yes             | simulated (before_each re-applied to mock)
    partial        | no              | live transport
    forced         | yes             | simulated (before_each re-applied to mock)
    forced         | no              | NoMockProvided, nothing scheduled

Also owns httpx client construction and httpx -> ResponseCase conversion.
"""

from __future__ import annotations

import base64
import time
from threading import Lock
from typing import Any, Callable, assert_never

import httpx

from api_courier.errors import NoMockProvided, RequestBuildError, TransportError
from api_courier.models import Mock, RequestDescriptor, ResponseCase, TransportConfig
from api_courier.modes import ExecutionMode
from api_courier.trust import HostPinnedTrust, TrustDelegate, build_trust_mounts

# Zero-argument callable run on a scheduler worker; returns the response or raises
OperationBody = Callable[[], ResponseCase]


def build_client(
    base_url: str | None,
    config: TransportConfig,
    trust_delegate: TrustDelegate | None = None,
    transport: httpx.BaseTransport | None = None,
) -> httpx.Client:
    """Build the httpx client including TLS and host-pinning configuration.

    An explicit `transport` (tests, custom stacks) bypasses TLS setup and
    pinning entirely.
    """
    kwargs: dict[str, Any] = {
        "timeout": config.timeout,
        "follow_redirects": config.follow_redirects,
    }

    if transport is not None:
        kwargs["transport"] = transport
        return httpx.Client(**kwargs)

    if config.ca_bundle:
        kwargs["verify"] = config.ca_bundle
    elif not config.verify_ssl:
        kwargs["verify"] = False
    # else: use httpx default (True)

    if config.pin_base_host or trust_delegate is not None:
        pinned = HostPinnedTrust(base_url)
        decide = trust_delegate or pinned
        if pinned.host is not None:
            mounts = build_trust_mounts([pinned.host], decide)
            if mounts:
                kwargs["mounts"] = mounts

    return httpx.Client(**kwargs)


def convert_response(response: httpx.Response, elapsed_ms: float) -> ResponseCase:
    """Convert an httpx Response to a ResponseCase.

    Body parsing by content-type: JSON -> parsed value, text/* -> str,
    everything else -> base64.
    """
    headers: dict[str, list[str]] = {}
    for key, value in response.headers.multi_items():
        headers.setdefault(key.lower(), []).append(value)

    body: Any = None
    body_base64: str | None = None
    content_type = response.headers.get("content-type", "").lower()

    if response.content:
        if "json" in content_type:
            try:
                body = response.json()
            except ValueError:
                # Not valid JSON despite content-type
                body_base64 = base64.b64encode(response.content).decode("ascii")
        elif content_type.startswith("text/"):
            try:
                body = response.text
            except UnicodeDecodeError:
                body_base64 = base64.b64encode(response.content).decode("ascii")
        else:
            body_base64 = base64.b64encode(response.content).decode("ascii")

    return ResponseCase(
        status_code=response.status_code,
        headers=headers,
        body=body,
        body_base64=body_base64,
        elapsed_ms=elapsed_ms,
        http_version=response.http_version,
    )


def mock_response(mock: Mock) -> ResponseCase:
    """Render a mock's canned reply, or raise its canned error."""
    if mock.error is not None:
        # One instance serves every call; drop the previous call's traceback
        raise mock.error.with_traceback(None)

    headers = {key.lower(): [value] for key, value in mock.headers.items()}
    body: Any = mock.body
    body_base64: str | None = None
    if isinstance(body, bytes):
        body_base64 = base64.b64encode(body).decode("ascii")
        body = None
    elif body is not None and "content-type" not in headers:
        headers["content-type"] = ["text/plain" if isinstance(body, str) else "application/json"]

    return ResponseCase(
        status_code=mock.status_code,
        headers=headers,
        body=body,
        body_base64=body_base64,
        elapsed_ms=0.0,
    )


class MockRegistry:
    """Lock-guarded mapping of descriptor key -> Mock. Last registration wins."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._mocks: dict[str, Mock] = {}

    def register(self, mock: Mock) -> None:
        with self._lock:
            self._mocks[mock.key] = mock

    def get(self, key: str) -> Mock | None:
        with self._lock:
            return self._mocks.get(key)

    def clear(self) -> None:
        with self._lock:
            self._mocks.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._mocks)


class TransportSelector:
    """Picks the operation body for a built request."""

    def __init__(
        self,
        client: httpx.Client,
        mocks: MockRegistry,
        rewrite: Callable[[RequestDescriptor], RequestDescriptor],
    ) -> None:
        self._client = client
        self._mocks = mocks
        self._rewrite = rewrite

    def select(
        self,
        descriptor: RequestDescriptor,
        request: httpx.Request,
        execution_mode: ExecutionMode,
    ) -> OperationBody:
        """Return the body to schedule for this submission.

        Raises:
            NoMockProvided: In forced mode when no mock is registered.
            RequestBuildError: If before_each fails on the mock's descriptor.
        """
        if execution_mode is ExecutionMode.LIVE:
            return self._live(request)
        elif execution_mode is ExecutionMode.PARTIAL:
            mock = self._prepare_mock(descriptor)
            if mock is None:
                return self._live(request)
            return self._simulated(mock)
        elif execution_mode is ExecutionMode.FORCED:
            mock = self._prepare_mock(descriptor)
            if mock is None:
                raise NoMockProvided(descriptor.key)
            return self._simulated(mock)
        else:
            assert_never(execution_mode)

    def _prepare_mock(self, descriptor: RequestDescriptor) -> Mock | None:
        mock = self._mocks.get(descriptor.key)
        if mock is None:
            return None
        try:
            rewritten = self._rewrite(mock.descriptor)
        except Exception as e:
            raise RequestBuildError(f"before_each hook failed for mock '{mock.key}': {e}") from e
        return mock.with_descriptor(rewritten)

    def _simulated(self, mock: Mock) -> OperationBody:
        def run() -> ResponseCase:
            return mock_response(mock)

        return run

    def _live(self, request: httpx.Request) -> OperationBody:
        client = self._client

        def run() -> ResponseCase:
            start_time = time.perf_counter()
            try:
                response = client.send(request)
            except httpx.TimeoutException as e:
                raise TransportError(f"Request timeout: {e}", e) from e
            except httpx.ConnectError as e:
                raise TransportError(f"Connection error: {e}", e) from e
            except httpx.RequestError as e:
                raise TransportError(f"Request error: {e}", e) from e
            elapsed_ms = (time.perf_counter() - start_time) * 1000
            return convert_response(response, elapsed_ms)

        return run

