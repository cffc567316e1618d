"""Server-trust policy for the base URL host.

The built-in policy is a host-string pin: a server certificate presented
by the configured base URL's host is accepted without validation; every
other host gets the platform default verification. It is not certificate
validation and must not be mistaken for it.
"""

from __future__ import annotations

import ssl
from enum import Enum
from typing import Any, Callable

import httpx


class TrustDisposition(str, Enum):
    USE_CREDENTIAL = "use_credential"  # Accept the presented server certificate
    DEFAULT = "default"  # Platform default handling


TrustDelegate = Callable[[str], TrustDisposition]


class HostPinnedTrust:
    """Accepts the server certificate only for the base URL's host."""

    def __init__(self, base_url: str | None) -> None:
        self._host: str | None = None
        if base_url:
            try:
                self._host = httpx.URL(base_url).host or None
            except httpx.InvalidURL:
                self._host = None

    @property
    def host(self) -> str | None:
        return self._host

    def __call__(self, challenge_host: str) -> TrustDisposition:
        if self._host is not None and challenge_host == self._host:
            return TrustDisposition.USE_CREDENTIAL
        return TrustDisposition.DEFAULT


def _accepting_context() -> ssl.SSLContext:
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


def build_trust_mounts(
    hosts: list[str],
    decide: TrustDelegate,
    transport_kwargs: dict[str, Any] | None = None,
) -> dict[str, httpx.BaseTransport]:
    """Build httpx mounts that accept server certificates for trusted hosts.

    Each host is asked once at client construction; only hosts answered with
    USE_CREDENTIAL get a mount. Unmounted hosts keep the client's default
    `verify` setting.
    """
    mounts: dict[str, httpx.BaseTransport] = {}
    for host in hosts:
        if decide(host) is TrustDisposition.USE_CREDENTIAL:
            mounts[f"https://{host}"] = httpx.HTTPTransport(
                verify=_accepting_context(), **(transport_kwargs or {})
            )
    return mounts
