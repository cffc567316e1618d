"""Request Pipeline - Turns a RequestDescriptor into an httpx.Request.

Order of work for every submission:
  1. before_each rewrite hook (identity when unset)
  2. header resolution: custom headers, Accept-Language, additional_headers(),
     then the descriptor's own headers; later sources win on collisions
  3. serialization against the base URL; any failure raises RequestBuildError
     and nothing is scheduled
  4. pre_process_request hook, which may mutate the built request in place
"""

from __future__ import annotations

import json
import locale
from threading import Lock
from typing import Any, Callable

import httpx

from api_courier.errors import RequestBuildError
from api_courier.models import ContentType, EtagPolicy, RequestDescriptor
from api_courier.storage import EtagStore

BeforeEach = Callable[[RequestDescriptor], RequestDescriptor]
AdditionalHeaders = Callable[[], dict[str, str]]
PreProcessRequest = Callable[[httpx.Request], None]


def accept_language() -> str:
    """Accept-Language value derived from the process locale.

    "en_US" becomes "en-US,en;q=0.9"; an unknown locale becomes "*".
    """
    try:
        language = locale.getlocale()[0]
    except ValueError:
        language = None
    if not language or language in ("C", "POSIX"):
        return "*"

    tag = language.replace("_", "-")
    primary = tag.split("-", 1)[0]
    if primary == tag:
        return tag
    return f"{tag},{primary};q=0.9"


class CustomHeaders:
    """Lock-guarded header mapping mutated by authenticate()."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._lock = Lock()
        self._headers: dict[str, str] = dict(initial or {})

    def set(self, name: str, value: str) -> None:
        with self._lock:
            self._headers[name] = value

    def remove(self, name: str) -> None:
        with self._lock:
            self._headers.pop(name, None)

    def get(self, name: str) -> str | None:
        with self._lock:
            return self._headers.get(name)

    def snapshot(self) -> dict[str, str]:
        with self._lock:
            return dict(self._headers)


def _merge_headers(*sources: dict[str, str]) -> dict[str, str]:
    """Merge header dicts case-insensitively; later sources override earlier ones."""
    merged: dict[str, str] = {}
    names: dict[str, str] = {}
    for source in sources:
        for key, value in source.items():
            lower = key.lower()
            if lower in names:
                del merged[names[lower]]
            names[lower] = key
            merged[key] = value
    return merged


def _query_params(parameters: dict[str, Any]) -> list[tuple[str, str]]:
    """Flatten parameters to query pairs; lists become repeated keys."""
    params: list[tuple[str, str]] = []
    for key, value in parameters.items():
        values = value if isinstance(value, (list, tuple)) else [value]
        for item in values:
            if item is None:
                continue
            if isinstance(item, bool):
                item = "true" if item else "false"
            params.append((key, str(item)))
    return params


class RequestPipeline:
    """Applies the pre-submission transformations and serializes the request."""

    def __init__(
        self,
        custom_headers: CustomHeaders,
        etag_store: EtagStore,
    ) -> None:
        self._custom_headers = custom_headers
        self._etag_store = etag_store
        self.before_each: BeforeEach | None = None
        self.additional_headers: AdditionalHeaders | None = None
        self.pre_process_request: PreProcessRequest | None = None

    def rewrite(self, descriptor: RequestDescriptor) -> RequestDescriptor:
        """Apply before_each, or return the descriptor unchanged."""
        if self.before_each is None:
            return descriptor
        return self.before_each(descriptor)

    def request_headers(self) -> dict[str, str]:
        """Custom headers, Accept-Language and additional_headers(), in that order."""
        extra = self.additional_headers() if self.additional_headers is not None else {}
        return _merge_headers(
            self._custom_headers.snapshot(),
            {"Accept-Language": accept_language()},
            extra or {},
        )

    def build(self, descriptor: RequestDescriptor, base_url: str | None) -> httpx.Request:
        """Build the wire request for a descriptor.

        Raises:
            RequestBuildError: If the rewrite hook or serialization fails.
        """
        try:
            rewritten = self.rewrite(descriptor)
        except Exception as e:
            raise RequestBuildError(f"before_each hook failed for '{descriptor.key}': {e}") from e

        try:
            computed = self.request_headers()
        except Exception as e:
            raise RequestBuildError(f"additional_headers hook failed: {e}") from e
        headers = _merge_headers(computed, rewritten.headers)

        # Conditional request header keyed by the caller's original descriptor,
        # the same key the etag was saved under.
        if rewritten.etag_policy is EtagPolicy.ENABLED:
            token = self._etag_store.get(descriptor.etag_key(base_url or ""))
            if token is not None:
                headers = _merge_headers(headers, {"If-None-Match": token})

        request = self._serialize(rewritten, base_url, headers)

        if self.pre_process_request is not None:
            try:
                self.pre_process_request(request)
            except Exception as e:
                raise RequestBuildError(f"pre_process_request hook failed for '{rewritten.key}': {e}") from e
        return request

    def _serialize(
        self,
        descriptor: RequestDescriptor,
        base_url: str | None,
        headers: dict[str, str],
    ) -> httpx.Request:
        try:
            url = self._resolve_url(descriptor.path, base_url)
            params: list[tuple[str, str]] | None = None
            content: bytes | None = None

            encoding = descriptor.encoding
            if descriptor.parameters:
                if encoding is ContentType.QUERY:
                    params = _query_params(descriptor.parameters)
                elif encoding is ContentType.JSON:
                    content = json.dumps(descriptor.parameters).encode("utf-8")
                    headers = _merge_headers({"Content-Type": "application/json"}, headers)
                elif encoding is ContentType.FORM:
                    content = str(httpx.QueryParams(_query_params(descriptor.parameters))).encode("ascii")
                    headers = _merge_headers(
                        {"Content-Type": "application/x-www-form-urlencoded"}, headers
                    )

            return httpx.Request(
                method=descriptor.method.value,
                url=url,
                params=params,
                headers=headers,
                content=content,
            )
        except (httpx.InvalidURL, TypeError, ValueError, UnicodeEncodeError) as e:
            raise RequestBuildError(f"Cannot build request '{descriptor.key}': {e}") from e

    @staticmethod
    def _resolve_url(path: str, base_url: str | None) -> httpx.URL:
        """Join a path onto the base URL. Absolute URLs pass through."""
        target = httpx.URL(path)
        if target.is_absolute_url:
            return target
        if not base_url:
            raise RequestBuildError(f"Relative path '{path}' requires a base URL")
        base = httpx.URL(base_url)
        # Keep the base path: "https://h/api" + "users" -> "https://h/api/users"
        base_path = base.raw_path.split(b"?", 1)[0].decode("ascii")
        if not base_path.endswith("/"):
            base = base.copy_with(raw_path=(base_path + "/").encode("ascii"))
        return base.join(path.lstrip("/"))
