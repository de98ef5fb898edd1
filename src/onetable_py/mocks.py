from __future__ import annotations

import threading
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from typing import Any

from .query import Op

CLIENT_METHODS = frozenset(
    {op.client_method for op in Op}
    | {"batch_get_item", "batch_write_item", "transact_get_items", "transact_write_items"}
)


class _AnySentinel:
    def __repr__(self) -> str:  # pragma: no cover
        return "ANY"


ANY: Any = _AnySentinel()

type RequestMatcher = Mapping[str, Any] | Callable[[Mapping[str, Any]], None]


def mismatches(expected: Any, actual: Any, path: str = "request") -> Iterator[str]:
    """Yield a description of every place ``actual`` departs from ``expected``.

    Mappings match partially: only the keys named in ``expected`` are compared.
    Lists must match element for element.
    """
    if expected is ANY:
        return
    if isinstance(expected, Mapping):
        if not isinstance(actual, Mapping):
            yield f"{path}: expected dict, got {type(actual).__name__}"
            return
        for key, want in expected.items():
            if key in actual:
                yield from mismatches(want, actual[key], f"{path}.{key}")
            else:
                yield f"{path}: missing key {key!r}"
    elif isinstance(expected, list):
        if not isinstance(actual, list):
            yield f"{path}: expected list, got {type(actual).__name__}"
        elif len(expected) != len(actual):
            yield f"{path}: expected {len(expected)} items, got {len(actual)}"
        else:
            for pos, (want, got) in enumerate(zip(expected, actual, strict=True)):
                yield from mismatches(want, got, f"{path}[{pos}]")
    elif expected != actual:
        yield f"{path}: expected {expected!r}, got {actual!r}"


def check_request(matcher: RequestMatcher | None, request: Mapping[str, Any], *, path: str) -> None:
    """Raise AssertionError when ``request`` fails ``matcher``; callables assert for themselves."""
    if matcher is None:
        return
    if callable(matcher):
        matcher(request)
        return
    problems = list(mismatches(matcher, request, path))
    if problems:
        raise AssertionError("; ".join(problems))


@dataclass(frozen=True)
class ScriptedCall:
    method: str
    matcher: RequestMatcher | None = None
    response: Mapping[str, Any] | None = None
    error: Exception | None = None

    def accepts(self, method: str, request: Mapping[str, Any]) -> bool:
        if method != self.method:
            return False
        try:
            check_request(self.matcher, request, path=method)
        except AssertionError:
            return False
        return True


class FakeDynamoDBClient:
    """Scripted stand-in for the boto3 DynamoDB client methods a Table calls.

    Calls are answered strictly in the order they were expected. With
    ``ordered=False`` any pending expectation for the same method whose request
    matches is consumed, which suits follow reads issued from a thread pool.
    """

    def __init__(self, *, ordered: bool = True) -> None:
        self.ordered = ordered
        self._lock = threading.Lock()
        self._script: list[ScriptedCall] = []
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def expect(
        self,
        method: str,
        expected: RequestMatcher | None = None,
        *,
        response: Mapping[str, Any] | None = None,
        error: Exception | None = None,
    ) -> None:
        if method not in CLIENT_METHODS:
            raise ValueError(f"unknown DynamoDB client method: {method}")
        with self._lock:
            self._script.append(ScriptedCall(method=method, matcher=expected, response=response, error=error))

    def assert_no_pending(self) -> None:
        if self._script:
            raise AssertionError(f"pending expected calls: {self._script!r}")

    def methods(self) -> list[str]:
        return [method for method, _ in self.calls]

    def requests(self, method: str) -> list[dict[str, Any]]:
        return [request for name, request in self.calls if name == method]

    def __getattr__(self, name: str) -> Callable[..., Mapping[str, Any]]:
        if name not in CLIENT_METHODS:
            raise AttributeError(name)
        return lambda **request: self._answer(name, request)

    def _answer(self, method: str, request: dict[str, Any]) -> Mapping[str, Any]:
        with self._lock:
            self.calls.append((method, dict(request)))
            call = self._next(method, request)
        if call.error is not None:
            raise call.error
        return dict(call.response or {})

    def _next(self, method: str, request: dict[str, Any]) -> ScriptedCall:
        if not self._script:
            raise AssertionError(f"unexpected call: {method}")

        if self.ordered:
            call = self._script.pop(0)
            if call.method != method:
                raise AssertionError(f"expected {call.method}, got {method}")
            check_request(call.matcher, request, path=method)
            return call

        for pos, candidate in enumerate(self._script):
            if candidate.accepts(method, request):
                return self._script.pop(pos)
        raise AssertionError(f"no pending {method} matches {request!r}")
