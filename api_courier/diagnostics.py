"""Structured request/response/error diagnostics.

Events go through the standard logging module with their fields in
`extra`, so any formatter or handler that understands LogRecord
attributes can pick them up.
"""

from __future__ import annotations

import logging

import httpx

from api_courier.models import DiagnosticsConfig, ResponseCase

LOGGER = logging.getLogger("api_courier.diagnostics")

REDACTED = "<redacted>"
_SENSITIVE_HEADERS = frozenset({"authorization", "proxy-authorization", "cookie", "set-cookie"})


def redact_headers(headers: httpx.Headers | dict[str, str]) -> dict[str, str]:
    """Copy headers with credential-bearing values replaced."""
    items = headers.multi_items() if isinstance(headers, httpx.Headers) else headers.items()
    result: dict[str, str] = {}
    for key, value in items:
        result[key] = REDACTED if key.lower() in _SENSITIVE_HEADERS else value
    return result


class Diagnostics:
    """Emits request, response and error events when enabled."""

    def __init__(self, config: DiagnosticsConfig | None = None) -> None:
        self._config = config or DiagnosticsConfig()
        self._level = logging.getLevelName(self._config.level)

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    def log_request(self, request: httpx.Request) -> None:
        if not self.enabled:
            return
        LOGGER.log(
            self._level,
            "courier-request",
            extra={
                "method": request.method,
                "url": str(request.url),
                "headers": redact_headers(request.headers),
            },
        )

    def log_response(self, response: ResponseCase) -> None:
        if not self.enabled:
            return
        LOGGER.log(
            self._level,
            "courier-response",
            extra={
                "status": response.status_code,
                "elapsed_ms": round(response.elapsed_ms, 2),
                "headers": redact_headers({k: ", ".join(v) for k, v in response.headers.items()}),
            },
        )

    def log_error(self, error: BaseException) -> None:
        if not self.enabled:
            return
        LOGGER.log(
            max(self._level, logging.WARNING),
            "courier-error",
            extra={"error_type": type(error).__name__, "error": str(error)},
        )
