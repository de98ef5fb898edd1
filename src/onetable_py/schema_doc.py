from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import yaml

from .errors import SchemaError

_PARAM_ALIASES = {
    "isoDates": "iso_dates",
    "iso_dates": "iso_dates",
    "nulls": "nulls",
    "timestamps": "timestamps",
    "typeField": "type_field",
    "type_field": "type_field",
    "createdField": "created_field",
    "created_field": "created_field",
    "updatedField": "updated_field",
    "updated_field": "updated_field",
    "hidden": "hidden",
    "separator": "delimiter",
    "delimiter": "delimiter",
}


def parse_schema_document(raw: str) -> dict[str, Any]:
    """Load a schema from YAML or JSON text and check its overall shape."""
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError as err:
        raise SchemaError("invalid schema YAML/JSON") from err

    if not isinstance(parsed, dict):
        raise SchemaError("schema document must be a map/object")

    _assert_json_compatible(parsed, path="schema")
    return check_schema(parsed)


def check_schema(schema: Mapping[str, Any]) -> dict[str, Any]:
    version = schema.get("version")
    if not isinstance(version, str) or not version:
        raise SchemaError("schema is missing a version", context={"version": version})

    indexes = schema.get("indexes")
    if not isinstance(indexes, Mapping):
        raise SchemaError("schema is missing indexes")
    primary = indexes.get("primary")
    if not isinstance(primary, Mapping) or not primary.get("hash"):
        raise SchemaError("schema is missing indexes.primary.hash")

    models = schema.get("models", {})
    if not isinstance(models, Mapping):
        raise SchemaError("schema models must be a map")
    for name, fields in models.items():
        if not isinstance(fields, Mapping):
            raise SchemaError(f"schema model {name} must be a map of fields", context={"model": name})

    params = schema.get("params", {})
    if params is not None and not isinstance(params, Mapping):
        raise SchemaError("schema params must be a map")
    return dict(schema)


def schema_params(schema: Mapping[str, Any]) -> dict[str, Any]:
    """Translate a schema's ``params`` block into Table keyword options."""
    out: dict[str, Any] = {}
    for key, value in (schema.get("params") or {}).items():
        option = _PARAM_ALIASES.get(key)
        if option is None:
            raise SchemaError(f"Unknown schema param {key!r}", context={"param": key})
        out[option] = value
    return out


def _assert_json_compatible(value: Any, *, path: str) -> None:
    if value is None or isinstance(value, (str, bool, int, float)):
        if isinstance(value, float) and not (value == value and value not in (float("inf"), float("-inf"))):
            raise SchemaError(f"schema contains non-finite float at {path}")
        return

    if isinstance(value, list):
        for idx, elem in enumerate(value):
            _assert_json_compatible(elem, path=f"{path}[{idx}]")
        return

    if isinstance(value, dict):
        for k, v in value.items():
            if not isinstance(k, str):
                raise SchemaError(f"schema contains non-string key at {path}: {k!r}")
            _assert_json_compatible(v, path=f"{path}.{k}")
        return

    raise SchemaError(f"schema contains non-JSON value at {path}: {type(value).__name__}")
