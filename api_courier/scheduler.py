"""Operation Scheduler - A concurrency-bounded work queue.

Operations wait in a FIFO deque and are dispatched onto their own worker
thread while fewer than `limit` are executing (Synchronous -> 1,
Asynchronous -> unbounded, Bounded(n) -> n). A mode change applies to
dispatches made after it; executing operations are never interrupted.
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections import deque
from concurrent.futures import Future
from enum import Enum
from threading import Lock
from typing import Callable, Generic, TypeVar

from api_courier.errors import OperationCancelled
from api_courier.modes import ConcurrencyMode, concurrency_limit, describe_concurrency_mode

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class OperationState(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


_TERMINAL = frozenset({OperationState.COMPLETED, OperationState.FAILED, OperationState.CANCELLED})


class Operation(Generic[T]):
    """One scheduled unit of work and the future it settles.

    A cancelled operation settles its future with OperationCancelled at
    cancellation time; if its body was already executing, the body's
    eventual result is discarded.
    """

    def __init__(self, operation_id: int, body: Callable[[], T]) -> None:
        self.operation_id = operation_id
        self.future: Future[T] = Future()
        self._body = body
        self._state = OperationState.PENDING
        self._lock = Lock()

    @property
    def state(self) -> OperationState:
        with self._lock:
            return self._state

    def run(self) -> None:
        with self._lock:
            if self._state is not OperationState.PENDING:
                return
            if not self.future.set_running_or_notify_cancel():
                # Caller cancelled the bare future before dispatch
                self._state = OperationState.CANCELLED
                return
            self._state = OperationState.EXECUTING

        try:
            result = self._body()
        except BaseException as e:
            # Worker threads must always settle the future, whatever the body raises
            if self._transition(OperationState.FAILED):
                self.future.set_exception(e)
        else:
            if self._transition(OperationState.COMPLETED):
                self.future.set_result(result)

    def cancel(self) -> bool:
        """Settle with OperationCancelled. Returns False if already finished."""
        if not self._transition(OperationState.CANCELLED):
            return False
        if not self.future.done():
            self.future.set_exception(OperationCancelled(f"Operation {self.operation_id} was cancelled"))
        return True

    def _transition(self, state: OperationState) -> bool:
        with self._lock:
            if self._state in _TERMINAL:
                return False
            self._state = state
            return True


class OperationScheduler:
    """Dispatches operations onto worker threads under the mode's bound."""

    def __init__(self, mode: ConcurrencyMode) -> None:
        self._lock = Lock()
        self._pending: deque[Operation] = deque()
        self._executing: set[Operation] = set()
        self._ids = itertools.count(1)
        self._limit = concurrency_limit(mode)

    @property
    def limit(self) -> int | None:
        with self._lock:
            return self._limit

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def executing_count(self) -> int:
        with self._lock:
            return len(self._executing)

    def set_mode(self, mode: ConcurrencyMode) -> None:
        with self._lock:
            self._limit = concurrency_limit(mode)
            ready = self._take_ready()
        LOGGER.debug("scheduler-mode", extra={"mode": describe_concurrency_mode(mode)})
        self._start(ready)

    def submit(self, body: Callable[[], T]) -> Future[T]:
        operation: Operation[T] = Operation(next(self._ids), body)
        with self._lock:
            self._pending.append(operation)
            ready = self._take_ready()
        self._start(ready)
        return operation.future

    def cancel_all(self) -> int:
        """Cancel every pending and executing operation. Returns how many were cancelled.

        Executing operations give up their slot immediately; their worker
        threads finish in the background and their results are discarded.
        """
        with self._lock:
            victims = list(self._pending) + list(self._executing)
            self._pending.clear()
            self._executing.clear()
        cancelled = sum(1 for operation in victims if operation.cancel())
        with self._lock:
            ready = self._take_ready()
        LOGGER.debug("scheduler-cancel-all", extra={"cancelled": cancelled})
        self._start(ready)
        return cancelled

    def _take_ready(self) -> list[Operation]:
        """Pop operations that fit under the limit. Caller holds the lock."""
        ready: list[Operation] = []
        while self._pending and (self._limit is None or len(self._executing) < self._limit):
            operation = self._pending.popleft()
            self._executing.add(operation)
            ready.append(operation)
        return ready

    def _start(self, operations: list[Operation]) -> None:
        for operation in operations:
            thread = threading.Thread(
                target=self._work,
                args=(operation,),
                name=f"courier-op-{operation.operation_id}",
                daemon=True,
            )
            thread.start()

    def _work(self, operation: Operation) -> None:
        try:
            operation.run()
        finally:
            ready: list[Operation] = []
            with self._lock:
                # A cancelled operation has already released its slot
                if operation in self._executing:
                    self._executing.remove(operation)
                    ready = self._take_ready()
            self._start(ready)
