from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

import pytest

from onetable_py import ArgumentError, ModelDefinition, Op, parse_indexes
from onetable_py.transform import (
    TransformPipeline,
    from_dynamo,
    read_date,
    remove_empty,
    to_dynamo,
    to_number,
    write_date,
)

WHEN = datetime(2024, 1, 2, 3, 4, 5, tzinfo=UTC)

MODEL = ModelDefinition.from_schema(
    "Profile",
    {
        "pk": {"type": "string", "value": "profile#${id}"},
        "sk": {"type": "string", "value": "profile#"},
        "id": {"type": "string"},
        "born": {"type": "date"},
        "score": {"type": "number"},
        "active": {"type": "boolean"},
        "roles": {"type": "set"},
        "address": {
            "type": "object",
            "schema": {
                "street": {"type": "string"},
                "zip": {"type": "string", "map": "z"},
            },
        },
    },
    indexes=parse_indexes({"primary": {"hash": "pk", "sort": "sk"}}),
)
FIELDS = MODEL.graph.fields


def test_write_date_iso_and_epoch() -> None:
    assert write_date(WHEN, iso=True) == "2024-01-02T03:04:05.000Z"
    assert write_date(WHEN, iso=False) == 1704164645000
    assert write_date("2024-01-02T03:04:05+00:00", iso=False) == 1704164645000
    assert write_date(1704164645000, iso=True) == "2024-01-02T03:04:05.000Z"


def test_read_date_accepts_iso_and_epoch_values() -> None:
    assert read_date("2024-01-02T03:04:05.000Z") == WHEN
    assert read_date(1704164645000) == WHEN
    assert read_date(Decimal("1704164645000")) == WHEN
    assert read_date("") is None


def test_remove_empty_strips_nested_empties() -> None:
    value = {"a": "", "b": None, "c": {"d": ""}, "e": [1, "", None]}
    assert remove_empty(value) == {"c": {}, "e": [1]}
    assert remove_empty(value, nulls=True) == {"b": None, "c": {}, "e": [1, None]}


def test_number_conversions() -> None:
    assert to_number("12") == 12
    assert to_number("1.5") == 1.5
    assert to_number(True) == 1
    with pytest.raises(ArgumentError, match="Invalid number"):
        to_number("abc")
    assert to_dynamo({"x": 1.5, "y": [0.25]}) == {"x": Decimal("1.5"), "y": [Decimal("0.25")]}
    assert from_dynamo({"x": Decimal("2"), "y": Decimal("0.5")}) == {"x": 2, "y": 0.5}


def test_pipeline_writes_typed_values() -> None:
    pipeline = TransformPipeline(iso_dates=True)
    assert pipeline.write_attribute(Op.PUT, FIELDS["born"], WHEN) == "2024-01-02T03:04:05.000Z"
    assert pipeline.write_attribute(Op.PUT, FIELDS["score"], "42") == 42
    assert pipeline.write_attribute(Op.PUT, FIELDS["active"], "false") is False
    assert pipeline.write_attribute(Op.PUT, FIELDS["roles"], ["a", "b"]) == {"a", "b"}
    assert pipeline.write_attribute(Op.PUT, FIELDS["roles"], []) is None


def test_pipeline_writes_nested_schema_with_mapped_names() -> None:
    pipeline = TransformPipeline()
    written = pipeline.write_attribute(Op.PUT, FIELDS["address"], {"street": "Main", "zip": "94107", "extra": 1})
    assert written == {"street": "Main", "z": "94107"}


def test_pipeline_passes_operator_objects_for_queries() -> None:
    pipeline = TransformPipeline()
    written = pipeline.write_attribute(Op.FIND, FIELDS["score"], {"between": ["1", "9"]})
    assert written == {"between": [1, 9]}


def test_read_block_round_trips_and_skips_hidden_fields() -> None:
    pipeline = TransformPipeline()
    raw = {
        "pk": "profile#p1",
        "sk": "profile#",
        "id": "p1",
        "born": Decimal("1704164645000"),
        "score": Decimal("7"),
        "address": {"street": "Main", "z": "94107"},
        "_type": "Profile",
    }

    item = pipeline.read_block(MODEL.graph, raw)
    assert item == {
        "id": "p1",
        "born": WHEN,
        "score": 7,
        "address": {"street": "Main", "zip": "94107"},
        "_type": "Profile",
    }

    with_hidden = pipeline.read_block(MODEL.graph, raw, include_hidden=True)
    assert with_hidden["pk"] == "profile#p1"
