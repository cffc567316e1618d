"""Helpers for chaining concurrent.futures.Future objects.

Continuations run via add_done_callback on whichever thread settles the
source future; none of them block.
"""

from __future__ import annotations

from concurrent.futures import Future
from typing import Any, TypeVar

T = TypeVar("T")


def resolved(value: T) -> Future[T]:
    future: Future[T] = Future()
    future.set_result(value)
    return future


def rejected(error: BaseException) -> Future[Any]:
    future: Future[Any] = Future()
    future.set_exception(error)
    return future


def settle_from(target: Future[T], source: Future[T]) -> None:
    """Copy the outcome of a finished `source` into `target` if still open."""
    if target.done():
        return
    if source.cancelled():
        target.cancel()
        return
    error = source.exception()
    if error is not None:
        target.set_exception(error)
    else:
        target.set_result(source.result())


def forward(source: Future[T], target: Future[T]) -> None:
    """Settle `target` with whatever `source` settles with."""
    source.add_done_callback(lambda done: settle_from(target, done))

