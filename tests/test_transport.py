"""Tests for the transport selector, mock rendering and response conversion."""

import base64
import traceback

import httpx
import pytest

from api_courier.errors import NoMockProvided, RequestBuildError, TransportError
from api_courier.models import Mock, RequestDescriptor, TransportConfig
from api_courier.modes import ExecutionMode
from api_courier.transport import (
    MockRegistry,
    TransportSelector,
    build_client,
    convert_response,
    mock_response,
)
from tests.conftest import BASE_URL, RecordingTransport, connect_error

USERS = RequestDescriptor(path="/users")


@pytest.fixture
def mocks() -> MockRegistry:
    return MockRegistry()


@pytest.fixture
def client(transport: RecordingTransport):
    with httpx.Client(transport=transport) as client:
        yield client


@pytest.fixture
def selector(client: httpx.Client, mocks: MockRegistry) -> TransportSelector:
    return TransportSelector(client, mocks, lambda descriptor: descriptor)


def users_request() -> httpx.Request:
    return httpx.Request("GET", f"{BASE_URL}/users")


class TestDecisionTable:
    def test_live_ignores_registered_mock(self, selector, mocks, transport):
        transport.route("GET", "/users", httpx.Response(200, json={"live": True}))
        mocks.register(Mock(descriptor=USERS, body={"mocked": True}))

        response = selector.select(USERS, users_request(), ExecutionMode.LIVE)()

        assert response.body == {"live": True}
        assert transport.paths == ["/users"]

    def test_partial_with_mock_is_simulated(self, selector, mocks, transport):
        mocks.register(Mock(descriptor=USERS, status_code=202, body={"mocked": True}))

        response = selector.select(USERS, users_request(), ExecutionMode.PARTIAL)()

        assert response.status_code == 202
        assert response.body == {"mocked": True}
        assert transport.requests == []

    def test_partial_without_mock_goes_live(self, selector, transport):
        transport.route("GET", "/users", httpx.Response(200, json=[]))

        response = selector.select(USERS, users_request(), ExecutionMode.PARTIAL)()

        assert response.body == []
        assert transport.paths == ["/users"]

    def test_forced_with_mock_is_simulated(self, selector, mocks, transport):
        mocks.register(Mock(descriptor=USERS, body="canned"))

        response = selector.select(USERS, users_request(), ExecutionMode.FORCED)()

        assert response.body == "canned"
        assert transport.requests == []

    def test_forced_without_mock_raises_at_selection(self, selector, transport):
        with pytest.raises(NoMockProvided) as exc_info:
            selector.select(USERS, users_request(), ExecutionMode.FORCED)

        assert exc_info.value.key == USERS.key
        assert transport.requests == []

    def test_mock_lookup_ignores_headers(self, selector, mocks):
        mocks.register(Mock(descriptor=USERS, body="canned"))
        descriptor = USERS.with_changes(headers={"X-Trace": "1"})

        response = selector.select(descriptor, users_request(), ExecutionMode.FORCED)()

        assert response.body == "canned"

    def test_before_each_reapplied_to_mock_descriptor(self, client, mocks):
        seen: list[RequestDescriptor] = []

        def rewrite(descriptor: RequestDescriptor) -> RequestDescriptor:
            seen.append(descriptor)
            return descriptor.with_changes(headers={"X-Rewritten": "1"})

        selector = TransportSelector(client, mocks, rewrite)
        mock_descriptor = USERS.with_changes(parameters={})
        mocks.register(Mock(descriptor=mock_descriptor, body="canned"))

        selector.select(USERS, users_request(), ExecutionMode.PARTIAL)

        assert seen == [mock_descriptor]

    @pytest.mark.parametrize("execution_mode", [ExecutionMode.PARTIAL, ExecutionMode.FORCED])
    def test_before_each_failure_on_mock_wrapped(self, client, mocks, execution_mode):
        def rewrite(descriptor: RequestDescriptor) -> RequestDescriptor:
            raise ValueError("bad rewrite")

        selector = TransportSelector(client, mocks, rewrite)
        mocks.register(Mock(descriptor=USERS, body="canned"))

        with pytest.raises(RequestBuildError, match="bad rewrite") as exc_info:
            selector.select(USERS, users_request(), execution_mode)
        assert isinstance(exc_info.value.__cause__, ValueError)

    def test_mock_error_is_raised_by_body(self, selector, mocks):
        mocks.register(Mock(descriptor=USERS, error=RuntimeError("mocked failure")))
        body = selector.select(USERS, users_request(), ExecutionMode.FORCED)

        with pytest.raises(RuntimeError, match="mocked failure"):
            body()

    def test_mock_error_traceback_does_not_accumulate(self, selector, mocks):
        mocks.register(Mock(descriptor=USERS, error=RuntimeError("mocked failure")))
        body = selector.select(USERS, users_request(), ExecutionMode.FORCED)

        depths = []
        for _ in range(3):
            with pytest.raises(RuntimeError) as exc_info:
                body()
            depths.append(len(traceback.extract_tb(exc_info.value.__traceback__)))

        assert depths[0] == depths[1] == depths[2]


class TestLiveErrors:
    def test_connect_error_wrapped(self, selector, transport):
        underlying = connect_error("/users")
        transport.route("GET", "/users", underlying)

        with pytest.raises(TransportError, match="Connection error") as exc_info:
            selector.select(USERS, users_request(), ExecutionMode.LIVE)()

        assert exc_info.value.underlying is underlying

    def test_timeout_wrapped(self, selector, transport):
        transport.route("GET", "/users", httpx.ReadTimeout("slow", request=users_request()))

        with pytest.raises(TransportError, match="timeout"):
            selector.select(USERS, users_request(), ExecutionMode.LIVE)()

    def test_body_runs_lazily(self, selector, transport):
        transport.route("GET", "/users", httpx.Response(200))
        selector.select(USERS, users_request(), ExecutionMode.LIVE)
        assert transport.requests == []


class TestMockRegistry:
    def test_last_registration_wins(self, mocks):
        mocks.register(Mock(descriptor=USERS, body="first"))
        mocks.register(Mock(descriptor=USERS, body="second"))

        assert len(mocks) == 1
        assert mocks.get(USERS.key).body == "second"

    def test_clear(self, mocks):
        mocks.register(Mock(descriptor=USERS))
        mocks.clear()
        assert mocks.get(USERS.key) is None


class TestMockResponse:
    def test_json_body_gets_json_content_type(self):
        response = mock_response(Mock(descriptor=USERS, body={"a": 1}))
        assert response.header("content-type") == "application/json"
        assert response.body == {"a": 1}

    def test_text_body_gets_text_content_type(self):
        response = mock_response(Mock(descriptor=USERS, body="hello"))
        assert response.header("content-type") == "text/plain"

    def test_explicit_content_type_kept(self):
        mock = Mock(descriptor=USERS, headers={"Content-Type": "text/csv"}, body="a,b")
        assert mock_response(mock).headers["content-type"] == ["text/csv"]

    def test_bytes_body_base64(self):
        response = mock_response(Mock(descriptor=USERS, body=b"\x00\x01"))
        assert response.body is None
        assert base64.b64decode(response.body_base64) == b"\x00\x01"

    def test_etag_header_exposed(self):
        response = mock_response(Mock(descriptor=USERS, headers={"ETag": '"v1"'}))
        assert response.header("etag") == '"v1"'


class TestConvertResponse:
    def test_json(self):
        response = httpx.Response(200, json={"id": 1})
        case = convert_response(response, elapsed_ms=12.5)
        assert case.body == {"id": 1}
        assert case.elapsed_ms == 12.5
        assert case.status_code == 200

    def test_text(self):
        response = httpx.Response(200, text="plain", headers={"Content-Type": "text/plain; charset=utf-8"})
        assert convert_response(response, 0).body == "plain"

    def test_binary_is_base64(self):
        response = httpx.Response(200, content=b"\x89PNG", headers={"Content-Type": "image/png"})
        case = convert_response(response, 0)
        assert case.body is None
        assert base64.b64decode(case.body_base64) == b"\x89PNG"

    def test_invalid_json_falls_back_to_base64(self):
        response = httpx.Response(200, content=b"{not json", headers={"Content-Type": "application/json"})
        case = convert_response(response, 0)
        assert case.body is None
        assert base64.b64decode(case.body_base64) == b"{not json"

    def test_empty_body(self):
        case = convert_response(httpx.Response(304), 0)
        assert case.body is None
        assert case.body_base64 is None

    def test_repeated_headers_kept_lowercase(self):
        response = httpx.Response(200, headers=[("Set-Cookie", "a=1"), ("Set-Cookie", "b=2")])
        assert convert_response(response, 0).headers["set-cookie"] == ["a=1", "b=2"]


class TestBuildClient:
    def test_timeout_and_redirects_applied(self):
        config = TransportConfig(timeout=5, follow_redirects=True)
        with build_client(BASE_URL, config, transport=httpx.MockTransport(lambda r: httpx.Response(200))) as client:
            assert client.timeout.connect == 5
            assert client.follow_redirects is True

    def test_explicit_transport_used(self, transport):
        transport.route("GET", "/ping", httpx.Response(204))
        with build_client(BASE_URL, TransportConfig(), transport=transport) as client:
            assert client.get(f"{BASE_URL}/ping").status_code == 204
        assert transport.paths == ["/ping"]

    def test_builds_without_base_url(self):
        with build_client(None, TransportConfig()) as client:
            assert isinstance(client, httpx.Client)
