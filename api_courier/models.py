"""Internal data models for api-courier.

All serializable models use Pydantic v2. Objects that carry live httpx
or exception instances (Mock, Exchange) are dataclasses.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Self

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from api_courier.modes import ExecutionMode, parse_concurrency_mode


# =============================================================================
# Request Descriptor
# =============================================================================


class HTTPMethod(str, Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"
    HEAD = "HEAD"


class ContentType(str, Enum):
    """How descriptor parameters are serialized onto the wire."""

    QUERY = "query"  # URL query string
    JSON = "json"  # application/json body
    FORM = "form"  # application/x-www-form-urlencoded body


class StorePolicy(str, Enum):
    NONE = "none"
    OFFLINE = "offline"  # Persist for replay when the failure is offline-classified


class EtagPolicy(str, Enum):
    ENABLED = "enabled"  # Send If-None-Match when a token is stored
    DISABLED = "disabled"


# Methods whose parameters go into the query string by default
_QUERY_METHODS = frozenset({HTTPMethod.GET, HTTPMethod.HEAD, HTTPMethod.DELETE})


class RequestDescriptor(BaseModel):
    """Semantic, pre-wire description of one HTTP request.

    Immutable. Hooks that rewrite a request return a new descriptor
    (see with_changes). The identity `key` is derived from method, path
    and parameters and is shared by mock lookup and etag storage.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    method: HTTPMethod = Field(default=HTTPMethod.GET, description="HTTP method")
    path: str = Field(description="Path relative to the base URL, or an absolute URL")
    parameters: dict[str, Any] = Field(
        default_factory=dict, description="Query or body parameters"
    )
    headers: dict[str, str] = Field(default_factory=dict, description="Per-request headers")
    content_type: ContentType | None = Field(
        default=None, description="Parameter encoding; derived from method when omitted"
    )
    store_policy: StorePolicy = Field(default=StorePolicy.NONE, description="Offline persistence policy")
    etag_policy: EtagPolicy = Field(default=EtagPolicy.DISABLED, description="Conditional request policy")

    @field_validator("method", mode="before")
    @classmethod
    def normalize_method(cls, v: Any) -> Any:
        if isinstance(v, str) and not isinstance(v, HTTPMethod):
            return v.upper()
        return v

    @property
    def encoding(self) -> ContentType:
        """Effective parameter encoding: explicit content_type, else by method."""
        if self.content_type is not None:
            return self.content_type
        return ContentType.QUERY if self.method in _QUERY_METHODS else ContentType.JSON

    @property
    def key(self) -> str:
        """Stable identity: "METHOD path" plus canonical parameters when present."""
        base = f"{self.method.value} {self.path}"
        if not self.parameters:
            return base
        rendered = json.dumps(self.parameters, sort_keys=True, separators=(",", ":"), default=str)
        return f"{base} {rendered}"

    def etag_key(self, prefix: str) -> str:
        return f"{prefix}{self.key}"

    def with_method(self, method: HTTPMethod) -> RequestDescriptor:
        if self.method == method:
            return self
        return self.model_copy(update={"method": method})

    def with_changes(self, **changes: Any) -> RequestDescriptor:
        """Return a validated copy with the given fields replaced."""
        data = self.model_dump()
        data.update(changes)
        return RequestDescriptor.model_validate(data)


# =============================================================================
# Responses and Outcomes
# =============================================================================


class ResponseCase(BaseModel):
    """One HTTP response, live or simulated.

    Header keys are lowercase. Header values are arrays for repeated headers.
    """

    model_config = ConfigDict(extra="forbid")

    status_code: int = Field(description="HTTP status code")
    headers: dict[str, list[str]] = Field(
        default_factory=dict, description="Response headers (lowercase keys, array values)"
    )
    body: Any = Field(default=None, description="Body as JSON value or text if parseable")
    body_base64: str | None = Field(default=None, description="Body as base64 if binary")
    elapsed_ms: float = Field(default=0.0, description="Response time in milliseconds")
    http_version: str = Field(default="HTTP/1.1", description="Protocol version")

    @model_validator(mode="after")
    def check_body_exclusivity(self) -> Self:
        if self.body is not None and self.body_base64 is not None:
            raise ValueError("body and body_base64 are mutually exclusive")
        return self

    def header(self, name: str) -> str | None:
        """First value of a header, case-insensitive."""
        values = self.headers.get(name.lower())
        return values[0] if values else None


@dataclass(frozen=True)
class Exchange:
    """Successful outcome: the response plus the request that produced it."""

    descriptor: RequestDescriptor
    request: httpx.Request
    response: ResponseCase

    @property
    def status_code(self) -> int:
        return self.response.status_code


# =============================================================================
# Mocks
# =============================================================================


@dataclass(frozen=True)
class Mock:
    """A canned outcome substituted for live execution.

    Either `error` is set, or the response fields describe the reply.
    """

    descriptor: RequestDescriptor
    status_code: int = 200
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None
    error: Exception | None = None

    def __post_init__(self) -> None:
        if self.error is not None and not isinstance(self.error, Exception):
            raise TypeError(f"Mock error must be an Exception instance, got {self.error!r}")

    @property
    def key(self) -> str:
        return self.descriptor.key

    @classmethod
    def from_file(
        cls,
        descriptor: RequestDescriptor,
        path: Path,
        status_code: int = 200,
        headers: dict[str, str] | None = None,
    ) -> Mock:
        """Build a mock whose JSON body is loaded from a fixture file."""
        with open(path, "r", encoding="utf-8") as f:
            body = json.load(f)
        merged = {"content-type": "application/json"}
        merged.update(headers or {})
        return cls(descriptor=descriptor, status_code=status_code, headers=merged, body=body)

    def with_descriptor(self, descriptor: RequestDescriptor) -> Mock:
        return replace(self, descriptor=descriptor)


# =============================================================================
# Offline Capsules
# =============================================================================


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class OfflineCapsule(BaseModel):
    """A descriptor persisted after an offline failure, awaiting replay."""

    model_config = ConfigDict(extra="forbid")

    capsule_id: str = Field(default_factory=lambda: uuid.uuid4().hex, description="Unique identifier")
    created_at: datetime = Field(default_factory=_utc_now, description="When the failure was captured")
    descriptor: RequestDescriptor = Field(description="The request to replay")


# =============================================================================
# Runtime Configuration Models
# =============================================================================


class DiagnosticsConfig(BaseModel):
    """Request/response/error diagnostics settings."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = Field(default=False, description="Emit request/response/error diagnostics")
    level: str = Field(default="INFO", description="Logging level for diagnostics")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown logging level '{v}'")
        return level


class StorageConfig(BaseModel):
    """Where offline capsules and etags are persisted. None keeps them in memory."""

    model_config = ConfigDict(extra="forbid")

    offline_path: str | None = Field(default=None, description="JSON file for offline capsules")
    etag_path: str | None = Field(default=None, description="JSON file for etags")


class TransportConfig(BaseModel):
    """Settings handed to the httpx client."""

    model_config = ConfigDict(extra="forbid")

    timeout: float = Field(default=30.0, gt=0, description="Request timeout in seconds")
    verify_ssl: bool = Field(default=True, description="Verify server certificates")
    ca_bundle: str | None = Field(default=None, description="Path to a CA bundle")
    pin_base_host: bool = Field(
        default=True, description="Accept the server certificate presented by the base URL host"
    )
    follow_redirects: bool = Field(default=False, description="Follow HTTP redirects")


class CourierConfig(BaseModel):
    """Top-level runtime configuration file structure."""

    model_config = ConfigDict(extra="forbid")

    base_url: str | None = Field(default=None, description="Base URL for relative paths")
    mode: str | int = Field(default="async", description="sync | async | limited:<n> | <n>")
    execution_mode: ExecutionMode = Field(default=ExecutionMode.LIVE, description="live | partial | forced")
    headers: dict[str, str] = Field(
        default_factory=dict, description="Static headers (supports ${ENV_VAR} substitution)"
    )
    transport: TransportConfig = Field(default_factory=TransportConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    diagnostics: DiagnosticsConfig = Field(default_factory=DiagnosticsConfig)

    @field_validator("mode")
    @classmethod
    def validate_mode(cls, v: str | int) -> str | int:
        parse_concurrency_mode(v)
        return v
