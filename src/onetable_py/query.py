from __future__ import annotations

import base64
import json
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class Op(StrEnum):
    GET = "get"
    FIND = "find"
    PUT = "put"
    UPDATE = "update"
    DELETE = "delete"
    SCAN = "scan"

    @property
    def client_method(self) -> str:
        match self:
            case Op.GET:
                return "get_item"
            case Op.FIND:
                return "query"
            case Op.PUT:
                return "put_item"
            case Op.UPDATE:
                return "update_item"
            case Op.DELETE:
                return "delete_item"
            case Op.SCAN:
                return "scan"

    @property
    def transact_action(self) -> str:
        match self:
            case Op.GET:
                return "Get"
            case Op.PUT:
                return "Put"
            case Op.UPDATE:
                return "Update"
            case Op.DELETE:
                return "Delete"
            case Op.FIND | Op.SCAN:
                raise ValueError(f"{self.value} cannot run in a transaction")

    @property
    def keys_only(self) -> bool:
        return self in (Op.GET, Op.DELETE)

    @property
    def is_read(self) -> bool:
        return self in (Op.GET, Op.FIND, Op.SCAN)


@dataclass(frozen=True)
class Page[T]:
    """One page of find/scan results.

    ``start`` is the unmarshalled LastEvaluatedKey, ``next_cursor`` the same key as
    an opaque string. ``next()`` fetches the following page; on an exhausted page it
    returns an empty page.
    """

    items: list[T]
    start: dict[str, Any] | None = None
    next_cursor: str | None = None
    count: int | None = None
    fetch: Callable[[], Page[T]] | None = field(default=None, repr=False, compare=False)

    def __iter__(self) -> Iterator[T]:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)

    def __getitem__(self, index: int) -> T:
        return self.items[index]

    @property
    def has_next(self) -> bool:
        return self.fetch is not None

    def next(self) -> Page[T]:
        if self.fetch is None:
            return Page(items=[])
        return self.fetch()


@dataclass(frozen=True)
class Cursor:
    last_key: dict[str, Any]
    index: str | None = None


def _ensure_single_key_map(value: Any) -> tuple[str, Any]:
    if not isinstance(value, dict) or len(value) != 1:
        raise ValueError("attribute value must be a single-key map")
    (key, inner), *_ = value.items()
    return str(key), inner


def _av_to_json(av: Any) -> dict[str, Any]:
    kind, value = _ensure_single_key_map(av)

    if kind in {"S", "N"}:
        if not isinstance(value, str):
            raise ValueError(f"{kind} value must be a string")
        return {kind: value}

    if kind == "B":
        if not isinstance(value, (bytes, bytearray)):
            raise ValueError("B value must be bytes")
        return {"B": base64.b64encode(bytes(value)).decode("ascii")}

    raise ValueError(f"unsupported key attribute type: {kind}")


def _av_from_json(enc: Any) -> dict[str, Any]:
    kind, value = _ensure_single_key_map(enc)

    if kind in {"S", "N"}:
        if not isinstance(value, str):
            raise ValueError(f"{kind} value must be a string")
        return {kind: value}

    if kind == "B":
        if not isinstance(value, str):
            raise ValueError("B value must be a base64 string")
        return {"B": base64.b64decode(value)}

    raise ValueError(f"unsupported key attribute type: {kind}")


def encode_cursor(last_key: Any, *, index: str | None = None) -> str:
    """Encode a marshalled LastEvaluatedKey as a url-safe token."""
    if not last_key:
        return ""
    if not isinstance(last_key, dict):
        raise ValueError("last_key must be a map")

    payload: dict[str, Any] = {"lastKey": {str(k): _av_to_json(last_key[k]) for k in sorted(last_key)}}
    if index is not None:
        payload["index"] = index
    raw = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_cursor(cursor: str) -> Cursor:
    raw = str(cursor or "").strip()
    if not raw:
        raise ValueError("cursor is empty")

    padding = "=" * (-len(raw) % 4)
    data = base64.urlsafe_b64decode(raw + padding).decode("utf-8")
    parsed = json.loads(data)
    if not isinstance(parsed, dict):
        raise ValueError("cursor must decode to an object")

    last_key_raw = parsed.get("lastKey")
    if not isinstance(last_key_raw, dict) or not last_key_raw:
        raise ValueError("cursor lastKey is invalid")

    index = parsed.get("index")
    return Cursor(
        last_key={str(k): _av_from_json(last_key_raw[k]) for k in sorted(last_key_raw)},
        index=index if isinstance(index, str) else None,
    )
