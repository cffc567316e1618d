"""api-courier: HTTP client orchestration with mocks, etags and offline replay."""

from api_courier.client import Courier
from api_courier.errors import (
    CourierError,
    NoMockProvided,
    OperationCancelled,
    RequestBuildError,
    TransportError,
    is_offline_error,
)
from api_courier.models import (
    ContentType,
    EtagPolicy,
    Exchange,
    HTTPMethod,
    Mock,
    OfflineCapsule,
    RequestDescriptor,
    ResponseCase,
    StorePolicy,
)
from api_courier.modes import Asynchronous, Bounded, ConcurrencyMode, ExecutionMode, Synchronous

__all__ = [
    "Asynchronous",
    "Bounded",
    "ConcurrencyMode",
    "ContentType",
    "Courier",
    "CourierError",
    "EtagPolicy",
    "Exchange",
    "ExecutionMode",
    "HTTPMethod",
    "Mock",
    "NoMockProvided",
    "OfflineCapsule",
    "OperationCancelled",
    "RequestBuildError",
    "RequestDescriptor",
    "ResponseCase",
    "StorePolicy",
    "Synchronous",
    "TransportError",
    "is_offline_error",
]
