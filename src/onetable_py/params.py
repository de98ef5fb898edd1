from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, fields, replace
from typing import TYPE_CHECKING, Any

from .errors import ArgumentError

if TYPE_CHECKING:
    from .transaction import Batch, Transaction


class _UnsetSentinel:
    def __repr__(self) -> str:  # pragma: no cover
        return "UNSET"


UNSET: Any = _UnsetSentinel()

DEFAULT_MAX_PAGES = 1000


@dataclass(frozen=True)
class Params:
    """Per-call options.

    ``None`` (or ``UNSET`` for ``exists``) means "not given" so operation
    defaults can be layered underneath with :meth:`with_defaults`.
    ``exists=None`` is meaningful: it disables the existence condition and
    allows an update to create the item.
    """

    index: str | None = None
    execute: bool | None = None
    exists: Any = UNSET
    where: str | None = None
    substitutions: Mapping[str, Any] | None = None
    set: Mapping[str, Any] | None = None
    add: Mapping[str, Any] | None = None
    remove: Sequence[str] | str | None = None
    delete: Mapping[str, Any] | None = None
    push: Mapping[str, Any] | None = None
    fields: Sequence[str] | None = None
    limit: int | None = None
    next: Mapping[str, Any] | None = None
    prev: Mapping[str, Any] | None = None
    cursor: str | None = None
    reverse: bool | None = None
    consistent: bool | None = None
    segments: int | None = None
    segment: int | None = None
    max_pages: int | None = None
    follow: bool | None = None
    hidden: bool | None = None
    parse: bool | None = None
    high: bool | None = None
    many: bool | None = None
    throw: bool | None = None
    log: bool | None = None
    return_values: str | None = None
    batch: Batch | None = None
    transaction: Transaction | None = None
    update_indexes: bool | None = None
    type: str | None = None
    select: str | None = None
    count: bool | None = None
    stats: bool | None = None
    capacity: str | None = None
    context: Mapping[str, Any] | None = None
    tunnel: Mapping[str, Mapping[str, Any]] | None = None
    transform: Callable[..., Any] | None = None
    post_format: Callable[..., Any] | None = None
    retry: bool | None = None

    def __post_init__(self) -> None:
        if isinstance(self.remove, str):
            object.__setattr__(self, "remove", (self.remove,))

    @classmethod
    def of(cls, params: Params | Mapping[str, Any] | None = None, **options: Any) -> Params:
        if params is None:
            base = cls()
        elif isinstance(params, Params):
            base = params
        elif isinstance(params, Mapping):
            base = cls()
            options = {**params, **options}
        else:
            raise ArgumentError("params must be a Params instance or a mapping", context={"params": params})

        if not options:
            return base
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(options).difference(known))
        if unknown:
            raise ArgumentError(f"Unknown parameters: {', '.join(unknown)}", context={"params": unknown})
        return replace(base, **options)

    def with_defaults(self, **defaults: Any) -> Params:
        changes: dict[str, Any] = {}
        for name, value in defaults.items():
            current = getattr(self, name)
            if current is None or current is UNSET:
                if name == "exists" and current is None:
                    continue
                changes[name] = value
        return replace(self, **changes) if changes else self

    def but(self, **changes: Any) -> Params:
        return replace(self, **changes)

    @property
    def exists_given(self) -> bool:
        return self.exists is not UNSET

    @property
    def page_cap(self) -> int:
        return self.max_pages if self.max_pages is not None else DEFAULT_MAX_PAGES
