"""Result Decorator - Fixed side-effect chain attached to every operation.

On success: save the ETag (if any), then log request and response.
On failure: log the error, then persist an offline capsule when the error
is offline-classified and the descriptor's store policy is OFFLINE.

Side effects never change the outcome the caller observes: a side effect
that raises is logged and the original value or error is still delivered.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future

import httpx

from api_courier.diagnostics import Diagnostics
from api_courier.errors import is_offline_error
from api_courier.models import Exchange, OfflineCapsule, RequestDescriptor, ResponseCase, StorePolicy
from api_courier.storage import EtagStore, OfflineStore

LOGGER = logging.getLogger(__name__)


class ResultDecorator:
    def __init__(
        self,
        etag_store: EtagStore,
        offline_store: OfflineStore,
        diagnostics: Diagnostics,
    ) -> None:
        self._etag_store = etag_store
        self._offline_store = offline_store
        self._diagnostics = diagnostics

    def decorate(
        self,
        descriptor: RequestDescriptor,
        request: httpx.Request,
        future: Future[ResponseCase],
        etag_prefix: str,
    ) -> Future[Exchange]:
        """Chain the side effects onto a scheduler future.

        `descriptor` is the caller's original descriptor: it keys the etag
        and is what gets persisted for replay.
        """
        decorated: Future[Exchange] = Future()

        def on_done(done: Future[ResponseCase]) -> None:
            error = done.exception()
            if error is None:
                response = done.result()
                self._after_success(descriptor, request, response, etag_prefix)
                decorated.set_result(Exchange(descriptor=descriptor, request=request, response=response))
            else:
                self._after_failure(descriptor, error)
                decorated.set_exception(error)

        future.add_done_callback(on_done)
        return decorated

    def _after_success(
        self,
        descriptor: RequestDescriptor,
        request: httpx.Request,
        response: ResponseCase,
        etag_prefix: str,
    ) -> None:
        try:
            self.save_etag(descriptor, response, etag_prefix)
        except Exception:
            LOGGER.exception("etag-save-failed", extra={"key": descriptor.key})
        try:
            self._diagnostics.log_request(request)
            self._diagnostics.log_response(response)
        except Exception:
            LOGGER.exception("diagnostics-failed", extra={"key": descriptor.key})

    def _after_failure(self, descriptor: RequestDescriptor, error: BaseException) -> None:
        try:
            self._diagnostics.log_error(error)
        except Exception:
            LOGGER.exception("diagnostics-failed", extra={"key": descriptor.key})
        try:
            self.handle_error(descriptor, error)
        except Exception:
            LOGGER.exception("offline-save-failed", extra={"key": descriptor.key})

    def save_etag(self, descriptor: RequestDescriptor, response: ResponseCase, etag_prefix: str) -> None:
        """Upsert the response's ETag. A response without one leaves the store untouched."""
        token = response.header("etag")
        if token is None:
            return
        self._etag_store.add(token, descriptor.etag_key(etag_prefix))

    def handle_error(self, descriptor: RequestDescriptor, error: BaseException) -> bool:
        """Persist a capsule for offline-retryable failures. Returns True if one was saved."""
        if descriptor.store_policy is not StorePolicy.OFFLINE or not is_offline_error(error):
            return False
        self._offline_store.save(OfflineCapsule(descriptor=descriptor))
        return True
