from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

from .errors import SchemaError
from .model import FieldGraph

MaxNameLength = 255

_NAME_RE = re.compile(r"^[a-zA-Z0-9_.-]+$")
_REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL, "x": re.VERBOSE, "u": 0, "g": 0}


def validate_table_name(name: str) -> None:
    if len(name) < 3 or len(name) > MaxNameLength:
        raise SchemaError("table name length invalid", context={"table": name})
    if _NAME_RE.match(name) is None:
        raise SchemaError("table name contains invalid characters", context={"table": name})


def validate_index_name(name: str) -> None:
    if name == "primary":
        return
    if len(name) < 3 or len(name) > MaxNameLength:
        raise SchemaError("index name length invalid", context={"index": name})
    if _NAME_RE.match(name) is None:
        raise SchemaError("index name contains invalid characters", context={"index": name})


def compile_validator(pattern: str) -> re.Pattern[str]:
    """Compile a ``/pattern/flags`` string (or a bare pattern)."""
    if pattern.startswith("/") and pattern.rfind("/") > 0:
        end = pattern.rfind("/")
        flags = 0
        for ch in pattern[end + 1 :]:
            flags |= _REGEX_FLAGS.get(ch, 0)
        return re.compile(pattern[1:end], flags)
    return re.compile(pattern)


def _bad_value(name: str, value: Any) -> str:
    return f'Bad value "{value}" for "{name}"'


def validate_value(name: str, validate: Any, enum: tuple[Any, ...] | None, value: Any) -> str | None:
    if validate is not None:
        if isinstance(validate, re.Pattern):
            if validate.search(str(value)) is None:
                return _bad_value(name, value)
        elif isinstance(validate, str):
            if compile_validator(validate).search(str(value)) is None:
                return _bad_value(name, value)
        elif callable(validate):
            result = validate(value)
            if result is False:
                return _bad_value(name, value)
            if isinstance(result, str) and result:
                return result
    if enum is not None and value not in enum:
        return _bad_value(name, value)
    return None


def validate_properties(
    graph: FieldGraph,
    properties: Mapping[str, Any],
    *,
    check_required: bool,
    prefix: str = "",
) -> dict[str, str]:
    """Collect per-field validation failures as ``{pathname: message}``."""
    details: dict[str, str] = {}
    for fld in graph.ordered():
        key = f"{prefix}{fld.name}"
        value = properties.get(fld.name)
        if value is None:
            if check_required and fld.required:
                details[key] = f'Value not defined for required field "{fld.name}"'
            continue
        if isinstance(value, Mapping) and fld.kind != "object":
            # Operator objects are validated by the request builder
            continue
        message = validate_value(fld.name, fld.validate, fld.enum, value)
        if message is not None:
            details[key] = message
    return details
