"""Concurrency and execution modes.

ConcurrencyMode is a closed sum type (Synchronous | Asynchronous | Bounded).
ExecutionMode is a closed enum. Both are matched exhaustively with
assert_never so a new variant fails type checking at every decision point.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Union, assert_never


@dataclass(frozen=True)
class Synchronous:
    """One operation at a time, strict FIFO."""


@dataclass(frozen=True)
class Asynchronous:
    """No concurrency bound."""


@dataclass(frozen=True)
class Bounded:
    """At most `count` operations in flight."""

    count: int

    def __post_init__(self) -> None:
        if not isinstance(self.count, int) or isinstance(self.count, bool) or self.count <= 0:
            raise ValueError(f"Bounded mode requires a positive integer, got {self.count!r}")


ConcurrencyMode = Union[Synchronous, Asynchronous, Bounded]


def concurrency_limit(mode: ConcurrencyMode) -> int | None:
    """Maximum operations in flight for a mode. None means unbounded."""
    if isinstance(mode, Synchronous):
        return 1
    elif isinstance(mode, Asynchronous):
        return None
    elif isinstance(mode, Bounded):
        return mode.count
    else:
        assert_never(mode)


def parse_concurrency_mode(value: str | int) -> ConcurrencyMode:
    """Parse a mode from config: "sync", "async", "limited:<n>" or a positive int.

    Raises:
        ValueError: If the value is not a recognized mode.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid concurrency mode {value!r}")
    if isinstance(value, int):
        return Bounded(value)

    text = value.strip().lower()
    if text in ("sync", "synchronous"):
        return Synchronous()
    if text in ("async", "asynchronous"):
        return Asynchronous()
    if text.startswith("limited:"):
        count = text.split(":", 1)[1]
        try:
            return Bounded(int(count))
        except ValueError as e:
            raise ValueError(f"Invalid limited mode '{value}'. Expected limited:<positive int>") from e
    if text.isdigit():
        return Bounded(int(text))
    raise ValueError(
        f"Invalid concurrency mode '{value}'. Expected sync, async, limited:<n> or a positive integer"
    )


def describe_concurrency_mode(mode: ConcurrencyMode) -> str:
    """Render a mode back to its config spelling."""
    if isinstance(mode, Synchronous):
        return "sync"
    elif isinstance(mode, Asynchronous):
        return "async"
    elif isinstance(mode, Bounded):
        return f"limited:{mode.count}"
    else:
        assert_never(mode)


class ExecutionMode(str, Enum):
    """Global testing toggle, injected per Courier instance."""

    LIVE = "live"  # Always hit the transport
    PARTIAL = "partial"  # Prefer a registered mock, fall back to the transport
    FORCED = "forced"  # Require a registered mock
