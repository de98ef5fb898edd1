from __future__ import annotations

import base64
import binascii
import logging
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any

from boto3.dynamodb.types import Binary

from .encryption import Cipher
from .errors import ArgumentError, CryptoError
from .model import ArrayOf, Field, FieldGraph, ObjectOf, Scalar
from .query import Op

log = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)
_MILLISECOND = timedelta(milliseconds=1)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _parse_date(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError as err:
        raise ArgumentError(f"Invalid date value {value!r}", context={"value": value}) from err


def write_date(value: Any, *, iso: bool) -> Any:
    """Encode a date as an ISO-8601 UTC string (millisecond precision) or epoch milliseconds."""
    if isinstance(value, str):
        value = _parse_date(value)
    elif isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        if not iso:
            return int(value)
        value = EPOCH + int(value) * _MILLISECOND

    if not isinstance(value, datetime):
        return value

    value = _as_utc(value)
    if iso:
        return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return (value - EPOCH) // _MILLISECOND


def read_date(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        return EPOCH + int(value) * _MILLISECOND
    if isinstance(value, str):
        if value.lstrip("-").isdigit():
            return EPOCH + int(value) * _MILLISECOND
        return _as_utc(_parse_date(value))
    raise ArgumentError(f"Cannot read date value {value!r}", context={"value": value})


def remove_empty(value: Any, *, nulls: bool = False) -> Any:
    """Drop empty strings (and ``None`` unless ``nulls``) from nested maps and lists."""
    if isinstance(value, Mapping):
        out: dict[str, Any] = {}
        for key, item in value.items():
            if isinstance(item, (Mapping, list)):
                out[key] = remove_empty(item, nulls=nulls)
            elif item is None:
                if nulls:
                    out[key] = None
            elif item != "":
                out[key] = item
        return out
    if isinstance(value, list):
        items: list[Any] = []
        for item in value:
            if isinstance(item, (Mapping, list)):
                items.append(remove_empty(item, nulls=nulls))
            elif item is None:
                if nulls:
                    items.append(None)
            elif item != "":
                items.append(item)
        return items
    return value


def to_number(value: Any) -> int | float | Decimal:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float, Decimal)):
        return value
    try:
        number = Decimal(str(value).strip())
    except InvalidOperation as err:
        raise ArgumentError(f"Invalid number value {value!r}", context={"value": value}) from err
    if not number.is_finite():
        raise ArgumentError(f"Invalid number value {value!r}", context={"value": value})
    return int(number) if number == number.to_integral_value() else float(number)


def from_decimal(value: Decimal) -> int | float:
    return int(value) if value == value.to_integral_value() else float(value)


def to_dynamo(value: Any) -> Any:
    """Prepare a Python value for boto3's TypeSerializer."""
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, Mapping):
        return {str(k): to_dynamo(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_dynamo(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return {to_dynamo(v) for v in value}
    if isinstance(value, datetime):
        return write_date(value, iso=True)
    return value


def from_dynamo(value: Any) -> Any:
    if isinstance(value, Decimal):
        return from_decimal(value)
    if isinstance(value, Binary):
        return bytes(value.value)
    if isinstance(value, Mapping):
        return {k: from_dynamo(v) for k, v in value.items()}
    if isinstance(value, list):
        return [from_dynamo(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return {from_dynamo(v) for v in value}
    return value


class TransformPipeline:
    """Typed conversion between in-memory property values and stored attribute values."""

    def __init__(self, *, iso_dates: bool = False, cipher: Cipher | None = None) -> None:
        self.iso_dates = iso_dates
        self.cipher = cipher

    def write_date(self, value: Any) -> Any:
        return write_date(value, iso=self.iso_dates)

    # Write direction

    def write_attribute(self, op: Op, fld: Field, value: Any) -> Any:
        if value is None:
            return None

        if op in (Op.FIND, Op.SCAN) and isinstance(value, Mapping) and fld.kind != "object":
            # Operator object such as {"between": [a, b]}
            return {action: self._write_operand(fld, operand) for action, operand in value.items()}

        value = self._write_typed(fld, value)

        if fld.transform is not None:
            value = fld.transform("write", fld.name, value)
        if fld.crypt and value is not None:
            if self.cipher is None or not self.cipher.configured:
                raise CryptoError(f"Field {fld.name} is encrypted but no crypto is configured")
            value = self.cipher.encrypt(value if isinstance(value, str) else str(value))
        return value

    def _write_operand(self, fld: Field, operand: Any) -> Any:
        if isinstance(operand, (list, tuple)):
            return [self._write_typed(fld, v) for v in operand]
        return self._write_typed(fld, operand)

    def _write_typed(self, fld: Field, value: Any) -> Any:
        match fld.type:
            case Scalar(kind="date"):
                return self.write_date(value)
            case Scalar(kind="number"):
                return to_number(value)
            case Scalar(kind="boolean"):
                if isinstance(value, str) and value in ("false", "null", "undefined", ""):
                    return False
                return bool(value)
            case Scalar(kind="string"):
                return value if isinstance(value, str) else str(value)
            case Scalar(kind="binary"):
                if isinstance(value, (bytes, bytearray, memoryview)):
                    return base64.b64encode(bytes(value)).decode("ascii")
                return value
            case Scalar(kind="set"):
                if isinstance(value, (list, tuple, set, frozenset)):
                    items = {self._write_value(v) for v in value}
                    return items or None
                return value
            case Scalar():
                return value
            case ObjectOf(graph=None):
                return self._write_value(value) if isinstance(value, Mapping) else value
            case ObjectOf(graph=graph):
                return self._write_object(graph, value, nulls=fld.nulls) if isinstance(value, Mapping) else value
            case ArrayOf(item=ObjectOf(graph=FieldGraph() as graph)):
                if not isinstance(value, (list, tuple)):
                    return value
                return [self._write_object(graph, v, nulls=fld.nulls) if isinstance(v, Mapping) else v for v in value]
            case ArrayOf():
                return self._write_value(list(value)) if isinstance(value, (list, tuple)) else value

    def _write_object(self, graph: FieldGraph, obj: Mapping[str, Any], *, nulls: bool) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for fld in graph.ordered():
            if fld.name not in obj:
                continue
            value = obj[fld.name]
            if value is None and not fld.nulls:
                continue
            written = self.write_attribute(Op.PUT, fld, value)
            if written is None and not fld.nulls:
                continue
            if len(fld.attribute) > 1:
                out.setdefault(fld.attribute[0], {})[fld.attribute[1]] = written
            else:
                out[fld.attribute[0]] = written
        return out

    def _write_value(self, value: Any) -> Any:
        """Untyped nested values: dates and binary are coerced, empty strings and nulls dropped."""
        if isinstance(value, datetime):
            return self.write_date(value)
        if isinstance(value, (bytes, bytearray, memoryview)):
            return base64.b64encode(bytes(value)).decode("ascii")
        if isinstance(value, Mapping):
            out: dict[str, Any] = {}
            for key, item in value.items():
                if item is None or item == "":
                    continue
                out[key] = self._write_value(item)
            return out
        if isinstance(value, (list, tuple)):
            return [self._write_value(v) for v in value if v is not None and v != ""]
        return value

    # Read direction

    def read_attribute(self, fld: Field, value: Any, *, include_hidden: bool = False) -> Any:
        if fld.crypt and isinstance(value, str):
            if self.cipher is None or not self.cipher.configured:
                raise CryptoError(f"Field {fld.name} is encrypted but no crypto is configured")
            value = self.cipher.decrypt(value)

        value = self._read_typed(fld, value, include_hidden=include_hidden)
        if fld.transform is not None:
            value = fld.transform("read", fld.name, value)
        return value

    def _read_typed(self, fld: Field, value: Any, *, include_hidden: bool) -> Any:
        match fld.type:
            case Scalar(kind="date"):
                return read_date(from_dynamo(value))
            case Scalar(kind="binary"):
                if isinstance(value, str):
                    try:
                        return base64.b64decode(value, validate=True)
                    except binascii.Error as err:
                        raise ArgumentError(
                            f"Invalid binary value for {fld.name}", context={"field": fld.name}
                        ) from err
                return from_dynamo(value)
            case Scalar(kind="number"):
                if isinstance(value, str):
                    return to_number(value)
                return from_dynamo(value)
            case Scalar(kind="set"):
                return set(from_dynamo(value)) if isinstance(value, (set, frozenset, list)) else value
            case Scalar():
                return from_dynamo(value)
            case ObjectOf(graph=FieldGraph() as graph):
                if isinstance(value, Mapping):
                    return self.read_block(graph, value, include_hidden=include_hidden)
                return from_dynamo(value)
            case ArrayOf(item=ObjectOf(graph=FieldGraph() as graph)):
                if isinstance(value, list):
                    return [
                        self.read_block(graph, v, include_hidden=include_hidden) if isinstance(v, Mapping) else v
                        for v in value
                    ]
                return from_dynamo(value)
            case ObjectOf() | ArrayOf():
                return from_dynamo(value)

    def read_block(
        self,
        graph: FieldGraph,
        raw: Mapping[str, Any],
        *,
        include_hidden: bool = False,
        model: str = "",
    ) -> dict[str, Any]:
        """Map a stored item (or nested map) back to typed properties."""
        rec: dict[str, Any] = {}
        for fld in graph.ordered():
            if fld.hidden and not include_hidden:
                continue

            value = raw.get(fld.attribute[0])
            if len(fld.attribute) > 1:
                value = value.get(fld.attribute[1]) if isinstance(value, Mapping) else None

            if value is None:
                if fld.default is not None:
                    rec[fld.name] = fld.default() if callable(fld.default) else fld.default
                elif fld.required:
                    log.warning(
                        "required field %r in model %r is not defined in table item", fld.pathname, model
                    )
                continue

            rec[fld.name] = self.read_attribute(fld, value, include_hidden=include_hidden)
        return rec
