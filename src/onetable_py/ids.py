from __future__ import annotations

import os
import time
import uuid
from collections.abc import Callable
from datetime import UTC, datetime

from .errors import ArgumentError

# Crockford base32 (no I, L, O, U)
LETTERS = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
TIME_LEN = 10
RANDOM_LEN = 16

type IdGenerator = Callable[[], str]


def _encode(number: int, length: int) -> str:
    chars: list[str] = []
    for _ in range(length):
        chars.append(LETTERS[number & 31])
        number >>= 5
    return "".join(reversed(chars))


def ulid(when: datetime | None = None, *, rand_bytes: Callable[[int], bytes] = os.urandom) -> str:
    """Lexicographically sortable id: 10 time characters then 16 random characters."""
    millis = int(when.timestamp() * 1000) if when is not None else time.time_ns() // 1_000_000
    randomness = int.from_bytes(rand_bytes(10), "big")
    return _encode(millis, TIME_LEN) + _encode(randomness, RANDOM_LEN)


def ulid_time(value: str) -> datetime:
    if len(value) != TIME_LEN + RANDOM_LEN:
        raise ArgumentError("Invalid ULID", context={"value": value})
    millis = 0
    for char in value[:TIME_LEN]:
        index = LETTERS.find(char)
        if index < 0:
            raise ArgumentError(f"Invalid ULID char {char}", context={"value": value})
        millis = (millis << 5) | index
    return datetime.fromtimestamp(millis / 1000, tz=UTC)


def uid(size: int = 10, *, rand_bytes: Callable[[int], bytes] = os.urandom) -> str:
    """Random id of ``size`` base32 characters. Not sortable."""
    if size <= 0:
        raise ArgumentError("uid size must be > 0", context={"size": size})
    return "".join(LETTERS[b & 31] for b in rand_bytes(size))


def uuid4() -> str:
    return str(uuid.uuid4())


def make_generator(
    strategy: str | bool | Callable[[], str],
    *,
    default: str = "ulid",
    rand_bytes: Callable[[int], bytes] = os.urandom,
) -> IdGenerator:
    if callable(strategy):
        return strategy
    if strategy is True:
        strategy = default
    match strategy:
        case "ulid":
            return lambda: ulid(rand_bytes=rand_bytes)
        case "uuid":
            return uuid4
        case "uid":
            return lambda: uid(rand_bytes=rand_bytes)
        case _:
            raise ArgumentError(f"Unknown id generation strategy {strategy!r}", context={"generate": strategy})
