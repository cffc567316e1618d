"""Courier - The HTTP orchestration layer callers talk to.

Submission path for every verb call:

    middleware gate -> RequestPipeline.build -> TransportSelector.select
        -> OperationScheduler.submit -> ResultDecorator -> caller future

Build and selection errors settle the caller's future immediately; nothing
is scheduled and the result decorator does not run for them.
"""

from __future__ import annotations

import base64
import logging
from concurrent.futures import Future
from pathlib import Path
from threading import Lock
from typing import Any, Callable

import httpx

from api_courier.diagnostics import Diagnostics
from api_courier.futures import forward, rejected
from api_courier.models import (
    CourierConfig,
    DiagnosticsConfig,
    Exchange,
    HTTPMethod,
    Mock,
    RequestDescriptor,
    TransportConfig,
)
from api_courier.modes import (
    Asynchronous,
    ConcurrencyMode,
    ExecutionMode,
    describe_concurrency_mode,
    parse_concurrency_mode,
)
from api_courier.pipeline import AdditionalHeaders, BeforeEach, CustomHeaders, PreProcessRequest, RequestPipeline
from api_courier.replay import ReplayCoordinator
from api_courier.results import ResultDecorator
from api_courier.scheduler import OperationScheduler
from api_courier.storage import EtagStore, JsonFileEtagStore, JsonFileOfflineStore, OfflineStore
from api_courier.transport import MockRegistry, TransportSelector, build_client
from api_courier.trust import TrustDelegate

LOGGER = logging.getLogger(__name__)

# Receives a gate future; must eventually resolve it (set_result(None)) to
# release the request, or reject it (set_exception) to abort it.
Middleware = Callable[[Future[None]], None]


def release_immediately(gate: Future[None]) -> None:
    gate.set_result(None)


def basic_authorization(username: str, password: str) -> str:
    token = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


class Courier:
    """Executes RequestDescriptors with header, auth, mock, etag and offline policies.

    Usage:
        with Courier(base_url="https://api.example.com") as courier:
            exchange = courier.get(RequestDescriptor(path="/users")).result()

    Hooks (optional callables, unset means identity / no-op):
        before_each: RequestDescriptor -> RequestDescriptor rewrite
        additional_headers: () -> dict of dynamic headers
        pre_process_request: in-place mutation of the built httpx.Request
        middleware: gate that delays or aborts each submission
    """

    def __init__(
        self,
        base_url: str | None = None,
        mode: ConcurrencyMode | None = None,
        execution_mode: ExecutionMode = ExecutionMode.LIVE,
        transport_config: TransportConfig | None = None,
        trust_delegate: TrustDelegate | None = None,
        transport: httpx.BaseTransport | None = None,
        etag_store: EtagStore | None = None,
        offline_store: OfflineStore | None = None,
        diagnostics: DiagnosticsConfig | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        """Initialize the courier.

        Args:
            base_url: Base URL relative descriptor paths are joined onto; also
                the etag key prefix and the host pinned for server trust.
            mode: Concurrency mode (default Asynchronous).
            execution_mode: Live, partial or forced simulation.
            transport_config: Timeout and TLS settings for the httpx client.
            trust_delegate: Overrides the built-in host-pinning trust policy.
            transport: Explicit httpx transport (e.g. httpx.MockTransport).
            etag_store: Where ETags are kept (default in-memory).
            offline_store: Where offline capsules are kept (default in-memory).
            diagnostics: Request/response/error logging settings.
            headers: Static custom headers sent with every request.
        """
        self._base_url = base_url
        self._execution_mode = execution_mode
        self._mode: ConcurrencyMode = mode or Asynchronous()
        self._mode_lock = Lock()

        self._custom_headers = CustomHeaders(headers)
        self._mocks = MockRegistry()
        self.etag_store = etag_store if etag_store is not None else EtagStore()
        self.offline_store = offline_store if offline_store is not None else OfflineStore()

        self._client = build_client(
            base_url, transport_config or TransportConfig(), trust_delegate, transport
        )
        self._pipeline = RequestPipeline(self._custom_headers, self.etag_store)
        self._selector = TransportSelector(self._client, self._mocks, self._pipeline.rewrite)
        self._scheduler = OperationScheduler(self._mode)
        self._decorator = ResultDecorator(self.etag_store, self.offline_store, Diagnostics(diagnostics))
        self._replayer = ReplayCoordinator(self.offline_store, self.execute, self)

        self.middleware: Middleware = release_immediately

    @classmethod
    def from_config(
        cls,
        config: CourierConfig,
        transport: httpx.BaseTransport | None = None,
    ) -> Courier:
        """Build a courier from a loaded CourierConfig."""
        offline_store: OfflineStore = (
            JsonFileOfflineStore(Path(config.storage.offline_path))
            if config.storage.offline_path
            else OfflineStore()
        )
        etag_store: EtagStore = (
            JsonFileEtagStore(Path(config.storage.etag_path))
            if config.storage.etag_path
            else EtagStore()
        )
        return cls(
            base_url=config.base_url,
            mode=parse_concurrency_mode(config.mode),
            execution_mode=config.execution_mode,
            transport_config=config.transport,
            transport=transport,
            etag_store=etag_store,
            offline_store=offline_store,
            diagnostics=config.diagnostics,
            headers=config.headers,
        )

    def __enter__(self) -> Courier:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def close(self) -> None:
        """Cancel outstanding work and close the HTTP client."""
        try:
            self._scheduler.cancel_all()
        finally:
            self._client.close()

    # -------------------------------------------------------------------------
    # Configuration
    # -------------------------------------------------------------------------

    @property
    def base_url(self) -> str | None:
        return self._base_url

    @property
    def mode(self) -> ConcurrencyMode:
        with self._mode_lock:
            return self._mode

    def reset_mode(self, mode: ConcurrencyMode) -> None:
        with self._mode_lock:
            self._mode = mode
            self._scheduler.set_mode(mode)
        LOGGER.debug("mode-reset", extra={"mode": describe_concurrency_mode(mode)})

    @property
    def execution_mode(self) -> ExecutionMode:
        return self._execution_mode

    @execution_mode.setter
    def execution_mode(self, value: ExecutionMode) -> None:
        self._execution_mode = value

    @property
    def before_each(self) -> BeforeEach | None:
        return self._pipeline.before_each

    @before_each.setter
    def before_each(self, hook: BeforeEach | None) -> None:
        self._pipeline.before_each = hook

    @property
    def additional_headers(self) -> AdditionalHeaders | None:
        return self._pipeline.additional_headers

    @additional_headers.setter
    def additional_headers(self, hook: AdditionalHeaders | None) -> None:
        self._pipeline.additional_headers = hook

    @property
    def pre_process_request(self) -> PreProcessRequest | None:
        return self._pipeline.pre_process_request

    @pre_process_request.setter
    def pre_process_request(self, hook: PreProcessRequest | None) -> None:
        self._pipeline.pre_process_request = hook

    @property
    def request_headers(self) -> dict[str, str]:
        """Headers every request starts from (custom, Accept-Language, additional)."""
        return self._pipeline.request_headers()

    # -------------------------------------------------------------------------
    # Authentication
    # -------------------------------------------------------------------------

    def authenticate(
        self,
        *,
        username: str | None = None,
        password: str | None = None,
        authorization_header: str | None = None,
        bearer_token: str | None = None,
    ) -> None:
        """Set the Authorization header, overwriting any previous value.

        Exactly one form: username + password (Basic), a raw
        authorization_header, or a bearer_token.
        """
        forms = sum(
            1
            for given in (username is not None or password is not None, authorization_header, bearer_token)
            if given
        )
        if forms != 1:
            raise ValueError("authenticate() takes username/password, authorization_header or bearer_token")

        if authorization_header is not None:
            value = authorization_header
        elif bearer_token is not None:
            value = f"Bearer {bearer_token}"
        else:
            if username is None or password is None:
                raise ValueError("Basic authentication needs both username and password")
            value = basic_authorization(username, password)
        self._custom_headers.set("Authorization", value)

    # -------------------------------------------------------------------------
    # Mocks
    # -------------------------------------------------------------------------

    def register(self, mock: Mock) -> None:
        """Register a mock under its descriptor key. Last registration wins."""
        self._mocks.register(mock)

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def get(self, descriptor: RequestDescriptor) -> Future[Exchange]:
        return self.execute(descriptor.with_method(HTTPMethod.GET))

    def post(self, descriptor: RequestDescriptor) -> Future[Exchange]:
        return self.execute(descriptor.with_method(HTTPMethod.POST))

    def put(self, descriptor: RequestDescriptor) -> Future[Exchange]:
        return self.execute(descriptor.with_method(HTTPMethod.PUT))

    def patch(self, descriptor: RequestDescriptor) -> Future[Exchange]:
        return self.execute(descriptor.with_method(HTTPMethod.PATCH))

    def delete(self, descriptor: RequestDescriptor) -> Future[Exchange]:
        return self.execute(descriptor.with_method(HTTPMethod.DELETE))

    def head(self, descriptor: RequestDescriptor) -> Future[Exchange]:
        return self.execute(descriptor.with_method(HTTPMethod.HEAD))

    def execute(self, descriptor: RequestDescriptor) -> Future[Exchange]:
        """Submit a descriptor once the middleware gate releases it."""
        outcome: Future[Exchange] = Future()
        gate: Future[None] = Future()

        def on_gate(done: Future[None]) -> None:
            error = done.exception()
            if error is not None:
                outcome.set_exception(error)
                return
            forward(self._start(descriptor), outcome)

        gate.add_done_callback(on_gate)
        try:
            self.middleware(gate)
        except Exception as e:
            if not gate.done():
                gate.set_exception(e)
        return outcome

    def _start(self, descriptor: RequestDescriptor) -> Future[Exchange]:
        prefix = self._base_url or ""
        try:
            request = self._pipeline.build(descriptor, self._base_url)
            body = self._selector.select(descriptor, request, self._execution_mode)
        except Exception as e:
            return rejected(e)

        scheduled = self._scheduler.submit(body)
        return self._decorator.decorate(descriptor, request, scheduled, prefix)

    def cancel_all_requests(self) -> None:
        """Cancel every pending and in-flight operation."""
        self._scheduler.cancel_all()

    def replay(self) -> Future[Exchange | None]:
        """Re-submit all offline capsules sequentially. See ReplayCoordinator."""
        return self._replayer.replay()
