from __future__ import annotations

import itertools
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from .mocks import ANY, FakeDynamoDBClient


def fixed_rand_bytes(seed: bytes) -> Callable[[int], bytes]:
    if not seed:
        raise ValueError("seed must be non-empty")

    def rand(n: int) -> bytes:
        if n < 0:
            raise ValueError("n must be >= 0")
        if n == 0:
            return b""
        repeats = (n + len(seed) - 1) // len(seed)
        return (seed * repeats)[:n]

    return rand


def no_sleep(_: float) -> None:
    return None


def sequential_ids(prefix: str = "id") -> Callable[[], str]:
    """An id generator yielding ``prefix-1``, ``prefix-2``, ..."""
    counter = itertools.count(1)
    return lambda: f"{prefix}-{next(counter)}"


def fixed_clock(start: datetime | None = None, *, step: timedelta | None = None) -> Callable[[], datetime]:
    """A clock returning ``start`` and advancing by ``step`` on every call."""
    current = [start or datetime(2024, 1, 2, 3, 4, 5, tzinfo=UTC)]
    delta = step or timedelta(0)

    def now() -> datetime:
        value = current[0]
        current[0] = value + delta
        return value

    return now


__all__ = [
    "ANY",
    "FakeDynamoDBClient",
    "fixed_clock",
    "fixed_rand_bytes",
    "no_sleep",
    "sequential_ids",
]
