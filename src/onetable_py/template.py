from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from decimal import Decimal
from typing import Any

from .errors import ArgumentError

_VAR_RE = re.compile(r"\$\{(.*?)\}")


class _UnresolvedSentinel:
    def __repr__(self) -> str:  # pragma: no cover
        return "UNRESOLVED"

    def __bool__(self) -> bool:
        return False


UNRESOLVED: Any = _UnresolvedSentinel()


def template_vars(template: str) -> list[str]:
    """Names referenced by ``${...}`` tokens, without length/pad suffixes."""
    out: list[str] = []
    for token in _VAR_RE.findall(template):
        name = token.split(":")[0]
        if name not in out:
            out.append(name)
    return out


def is_resolved(text: str) -> bool:
    return _VAR_RE.search(text) is None


def lookup(name: str, *layers: Mapping[str, Any] | None) -> Any:
    """Return the first layer's value for a dotted ``name`` or UNRESOLVED."""
    for layer in layers:
        if not layer:
            continue
        value: Any = layer
        for part in name.split("."):
            if isinstance(value, Mapping) and part in value:
                value = value[part]
            else:
                value = UNRESOLVED
                break
        if value is not UNRESOLVED and value is not None:
            return value
    return UNRESOLVED


def stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, Decimal) and value == value.to_integral_value():
        return str(value.quantize(Decimal(1)))
    return str(value)


def expand(
    template: str,
    *layers: Mapping[str, Any] | None,
    format_value: Callable[[Any], Any] | None = None,
) -> str:
    """Substitute ``${name}`` / ``${name:len:pad}`` tokens from the first layer defining ``name``.

    Tokens with no match are left intact.
    """

    def replace(match: re.Match[str]) -> str:
        name, _, rest = match.group(1).partition(":")
        value = lookup(name, *layers)
        if value is UNRESOLVED:
            return match.group(0)
        if format_value is not None:
            value = format_value(value)
        if isinstance(value, (Mapping, list, tuple, set)):
            raise ArgumentError(
                f"Value for template variable {name!r} is not a primitive",
                context={"template": template, "name": name, "value": value},
            )
        text = stringify(value)
        if rest:
            length, _, pad = rest.partition(":")
            try:
                width = int(length)
            except ValueError as err:
                raise ArgumentError(
                    f"Invalid template length in {match.group(0)!r}", context={"template": template}
                ) from err
            text = text.rjust(width, (pad or "0")[0])
        return text

    return _VAR_RE.sub(replace, template)


def sort_key_prefix(text: str, delimiter: str) -> str | None:
    """Strip unresolved tokens and collapse trailing delimiter runs.

    ``"invoice#${id}"`` gives ``"invoice#"``. Returns None when nothing is left.
    """
    prefix = _VAR_RE.sub("", text)
    if delimiter:
        sep = re.escape(delimiter)
        prefix = re.sub(f"(?:{sep}){{2,}}$", delimiter, prefix)
    return prefix or None


def evaluate(
    name: str,
    template: str | Callable[..., Any] | None,
    properties: Mapping[str, Any],
    *contexts: Mapping[str, Any] | None,
    format_value: Callable[[Any], Any] | None = None,
    begins_delimiter: str | None = None,
) -> Any:
    """Compute a field value from its template.

    ``begins_delimiter`` enables the sort-key fallback: an incompletely
    resolved template becomes ``{"begins": prefix}``.
    """
    if template is None:
        return lookup(name, properties, *contexts)

    if callable(template):
        return template(name, properties, *contexts)

    text = expand(template, properties, *contexts, format_value=format_value)
    if is_resolved(text):
        return text

    if begins_delimiter is not None:
        prefix = sort_key_prefix(text, begins_delimiter)
        if prefix:
            return {"begins": prefix}
    return UNRESOLVED


def template_values(template: str, value: str) -> dict[str, str] | None:
    """Recover the variables of an expanded ``template`` from ``value``."""
    pattern: list[str] = []
    names: list[str] = []
    pos = 0
    for match in _VAR_RE.finditer(template):
        pattern.append(re.escape(template[pos : match.start()]))
        names.append(match.group(1).split(":")[0])
        pattern.append(f"(?P<v{len(names) - 1}>.*?)")
        pos = match.end()
    pattern.append(re.escape(template[pos:]))

    found = re.fullmatch("".join(pattern), value)
    if found is None:
        return None
    return {name: found.group(f"v{i}") for i, name in enumerate(names)}
