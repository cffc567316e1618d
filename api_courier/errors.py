"""Error hierarchy and the offline-failure classifier."""

from __future__ import annotations

import errno

import httpx


class CourierError(Exception):
    """Base class for api-courier errors."""


class RequestBuildError(CourierError):
    """Raised when a descriptor cannot be serialized into a wire request."""


class NoMockProvided(CourierError):
    """Raised in forced simulation mode when no mock is registered for a request."""

    def __init__(self, key: str) -> None:
        super().__init__(f"No mock registered for '{key}'")
        self.key = key


class TransportError(CourierError):
    """Raised when live execution fails (connection error, timeout, etc.)."""

    def __init__(self, message: str, underlying: BaseException) -> None:
        super().__init__(message)
        self.underlying = underlying


class OperationCancelled(CourierError):
    """Raised into the future of an operation cancelled by cancel_all_requests()."""


# errno values that mean "no network path", not "server answered badly"
_OFFLINE_ERRNOS = frozenset({
    errno.ENETUNREACH,
    errno.ENETDOWN,
    errno.EHOSTUNREACH,
    errno.ECONNREFUSED,
    errno.ECONNRESET,
    errno.ECONNABORTED,
    errno.ETIMEDOUT,
    errno.ENOTCONN,
})


def is_offline_error(error: BaseException) -> bool:
    """Return True if the error means the device could not reach the server.

    TransportError is unwrapped to its underlying exception. Cancellation,
    build and selection errors are never offline.
    """
    if isinstance(error, OperationCancelled):
        return False
    if isinstance(error, TransportError):
        error = error.underlying

    if isinstance(error, (httpx.ConnectError, httpx.ConnectTimeout, httpx.NetworkError)):
        return True
    if isinstance(error, OSError) and error.errno in _OFFLINE_ERRNOS:
        return True
    return False
