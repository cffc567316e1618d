"""Replay Coordinator - Drains the offline store sequentially.

A pass snapshots the pending capsules, forces Synchronous mode, submits
every capsule through the normal execute path in snapshot order, and
restores the previous mode once every submission has settled. Capsules
saved while a pass runs are left for the next pass, and a replay
requested while a pass runs joins it.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future
from threading import Lock
from typing import Callable, Protocol

from api_courier.errors import is_offline_error
from api_courier.futures import resolved, settle_from
from api_courier.models import Exchange, OfflineCapsule, RequestDescriptor
from api_courier.modes import ConcurrencyMode, Synchronous, describe_concurrency_mode
from api_courier.storage import OfflineStore

LOGGER = logging.getLogger(__name__)


class ModeControl(Protocol):
    @property
    def mode(self) -> ConcurrencyMode: ...

    def reset_mode(self, mode: ConcurrencyMode) -> None: ...


class ReplayCoordinator:
    """Replays offline capsules through `execute`, one at a time."""

    def __init__(
        self,
        store: OfflineStore,
        execute: Callable[[RequestDescriptor], Future[Exchange]],
        modes: ModeControl,
    ) -> None:
        self._store = store
        self._execute = execute
        self._modes = modes
        self._lock = Lock()
        self._running: Future[Exchange | None] | None = None

    def replay(self) -> Future[Exchange | None]:
        """Replay every pending capsule.

        Returns a future settled with the outcome of the last capsule, after
        the previous concurrency mode has been restored. With nothing pending
        it resolves to None and the mode is never touched.

        A call made while a pass is running returns that pass's future
        instead of starting a second one.
        """
        with self._lock:
            if self._running is not None:
                LOGGER.debug("replay-join")
                return self._running
            capsules = self._store.pending_capsules()
            if not capsules:
                return resolved(None)
            previous = self._modes.mode
            self._modes.reset_mode(Synchronous())
            result: Future[Exchange | None] = Future()
            self._running = result

        LOGGER.debug(
            "replay-start",
            extra={"capsules": len(capsules), "previous_mode": describe_concurrency_mode(previous)},
        )

        remaining = len(capsules)
        lock = Lock()
        futures: list[Future[Exchange]] = []

        def on_settled(capsule: OfflineCapsule, done: Future[Exchange]) -> None:
            nonlocal remaining
            self._consume(capsule, done)
            with lock:
                remaining -= 1
                finished = remaining == 0
            if not finished:
                return
            self._modes.reset_mode(previous)
            with self._lock:
                self._running = None
            LOGGER.debug("replay-end", extra={"capsules": len(capsules)})
            settle_from(result, futures[-1])

        # Every future is created before any callback can observe `futures[-1]`:
        # callbacks only finish the pass once all capsules have settled.
        for capsule in capsules:
            futures.append(self._execute(capsule.descriptor))
        for capsule, future in zip(capsules, futures):
            future.add_done_callback(lambda done, capsule=capsule: on_settled(capsule, done))

        return result

    def _consume(self, capsule: OfflineCapsule, done: Future[Exchange]) -> None:
        """Drop a capsule that succeeded, or that failed offline again.

        An offline failure has already been re-saved at the tail of the
        store by the result decorator, so the old copy goes.
        """
        error = done.exception()
        if error is None or is_offline_error(error):
            self._store.remove(capsule.capsule_id)
