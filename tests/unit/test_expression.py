from __future__ import annotations

import pytest

from onetable_py import ArgumentError, ModelDefinition, Op, Params, Table, ValidationError, parse_indexes
from onetable_py.expression import Expression
from onetable_py.mocks import FakeDynamoDBClient
from onetable_py.properties import Prepared

SCHEMA = {
    "version": "0.0.1",
    "indexes": {
        "primary": {"hash": "pk", "sort": "sk"},
        "gs1": {"hash": "gs1pk", "sort": "gs1sk"},
    },
    "models": {
        "Order": {
            "pk": {"type": "string", "value": "account#${accountId}"},
            "sk": {"type": "string", "value": "order#${orderId}"},
            "accountId": {"type": "string", "required": True},
            "orderId": {"type": "string"},
            "total": {"type": "number"},
            "status": {"type": "string", "enum": ["open", "paid"]},
            "tags": {"type": "array"},
            "gs1pk": {"type": "string", "value": "status#${status}"},
        }
    },
}


@pytest.fixture()
def table() -> Table:
    return Table("app-table", client=FakeDynamoDBClient(), schema=SCHEMA)


def test_find_uses_begins_with_when_sort_template_is_incomplete(table: Table) -> None:
    req = table.find("Order", {"accountId": "a1"}, execute=False)

    assert req == {
        "TableName": "app-table",
        "KeyConditionExpression": "#_0 = :_0 AND begins_with(#_1, :_1)",
        "FilterExpression": "(#_2 = :_2) AND (#_3 = :_3)",
        "ExpressionAttributeNames": {"#_0": "pk", "#_1": "sk", "#_2": "accountId", "#_3": "_type"},
        "ExpressionAttributeValues": {
            ":_0": {"S": "account#a1"},
            ":_1": {"S": "order#"},
            ":_2": {"S": "a1"},
            ":_3": {"S": "Order"},
        },
        "ConsistentRead": False,
        "ScanIndexForward": True,
    }


def test_find_with_between_filter(table: Table) -> None:
    req = table.find("Order", {"accountId": "a1", "total": {"between": [1, 10]}}, execute=False)

    assert req["FilterExpression"] == "(#_2 = :_2) AND (#_3 BETWEEN :_3 AND :_4) AND (#_4 = :_5)"
    assert req["ExpressionAttributeNames"]["#_3"] == "total"
    assert req["ExpressionAttributeValues"][":_3"] == {"N": "1"}
    assert req["ExpressionAttributeValues"][":_4"] == {"N": "10"}


def test_invalid_filter_operator_raises(table: Table) -> None:
    with pytest.raises(ArgumentError, match='Invalid filter operator "like"'):
        table.find("Order", {"accountId": "a1", "total": {"like": 5}}, execute=False)


def test_where_expansion_disables_begins_fallback(table: Table) -> None:
    req = table.find(
        "Order",
        {"accountId": "a1"},
        where="(${total} > {5}) and (${status} = @{status})",
        substitutions={"status": "paid"},
        execute=False,
    )

    assert req["KeyConditionExpression"] == "#_2 = :_2"
    assert req["FilterExpression"] == "((#_0 > :_1) and (#_1 = :_0)) AND (#_3 = :_3) AND (#_4 = :_4)"
    assert req["ExpressionAttributeNames"]["#_0"] == "total"
    assert req["ExpressionAttributeNames"]["#_1"] == "status"
    assert req["ExpressionAttributeValues"][":_0"] == {"S": "paid"}
    assert req["ExpressionAttributeValues"][":_1"] == {"N": "5"}


def test_every_reference_gets_a_fresh_placeholder(table: Table) -> None:
    req = table.scan("Order", where="${total} > {1} and ${total} < {9}", execute=False)

    names = req["ExpressionAttributeNames"]
    assert names["#_0"] == "total"
    assert names["#_1"] == "total"
    assert len(set(names)) == len(names)
    assert req["FilterExpression"].startswith("(#_0 > :_0 and #_1 < :_1)")


def test_where_literals_and_list_substitutions(table: Table) -> None:
    req = table.scan(
        "Order",
        where='${status} IN (@{...states}) and ${tags} <> {"x"} and ${total} >= {1.5} and ${accountId} = {true}',
        substitutions={"states": ["open", "paid"]},
        execute=False,
    )

    values = req["ExpressionAttributeValues"]
    assert values[":_0"] == {"S": "open"}
    assert values[":_1"] == {"S": "paid"}
    assert values[":_2"] == {"S": "x"}
    assert values[":_3"] == {"N": "1.5"}
    assert values[":_4"] == {"BOOL": True}


def test_missing_substitution_raises(table: Table) -> None:
    with pytest.raises(ArgumentError, match="Missing substitutions"):
        table.scan("Order", where="${status} = @{status}", execute=False)


def test_scan_request_carries_segments(table: Table) -> None:
    req = table.scan("Order", segments=4, segment=0, limit=10, execute=False)

    assert req["TotalSegments"] == 4
    assert req["Segment"] == 0
    assert req["Limit"] == 10
    assert req["FilterExpression"] == "#_0 = :_0"
    assert "ScanIndexForward" not in req


def test_find_direction_and_index(table: Table) -> None:
    req = table.find("Order", {"accountId": "a1"}, reverse=True, execute=False)
    assert req["ScanIndexForward"] is False

    req = table.find("Order", {"accountId": "a1"}, prev={"pk": "account#a1", "sk": "order#9"}, execute=False)
    assert req["ScanIndexForward"] is False
    assert req["ExclusiveStartKey"] == {"pk": {"S": "account#a1"}, "sk": {"S": "order#9"}}

    req = table.find("Order", {"status": "open"}, index="gs1", execute=False)
    assert req["IndexName"] == "gs1"
    assert req["KeyConditionExpression"] == "#_1 = :_1"
    assert req["FilterExpression"] == "(#_0 = :_0) AND (#_2 = :_2)"
    assert req["ExpressionAttributeValues"][":_1"] == {"S": "status#open"}


def test_unknown_index_raises(table: Table) -> None:
    with pytest.raises(ArgumentError, match="Cannot find index nope"):
        table.find("Order", {"accountId": "a1"}, index="nope", execute=False)


def test_low_level_api_rejects_secondary_index_keys(table: Table) -> None:
    with pytest.raises(ArgumentError, match="non-primary index"):
        table.get_model("Order").get_item({"accountId": "a1", "orderId": "o1"}, index="gs1")


def test_put_request(table: Table) -> None:
    req = table.create("Order", {"accountId": "a1", "orderId": "o1", "total": 5}, execute=False)

    assert req["ConditionExpression"] == "(attribute_not_exists(#_0)) AND (attribute_not_exists(#_1))"
    assert req["ExpressionAttributeNames"] == {"#_0": "pk", "#_1": "sk"}
    assert req["Item"] == {
        "pk": {"S": "account#a1"},
        "sk": {"S": "order#o1"},
        "accountId": {"S": "a1"},
        "orderId": {"S": "o1"},
        "total": {"N": "5"},
        "_type": {"S": "Order"},
    }
    assert req["ReturnValues"] == "NONE"
    assert "ExpressionAttributeValues" not in req


def test_update_request_orders_clauses(table: Table) -> None:
    req = table.update(
        "Order",
        {"accountId": "a1", "orderId": "o1"},
        add={"total": 2},
        set={"status": "paid"},
        execute=False,
    )

    assert req["ConditionExpression"] == "(attribute_exists(#_0)) AND (attribute_exists(#_1))"
    assert req["UpdateExpression"] == "ADD #_2 :_0 SET #_3 = :_1, #_4 = :_2, #_5 = :_3"
    assert req["ExpressionAttributeNames"] == {
        "#_0": "pk",
        "#_1": "sk",
        "#_2": "total",
        "#_3": "status",
        "#_4": "accountId",
        "#_5": "orderId",
    }
    assert req["Key"] == {"pk": {"S": "account#a1"}, "sk": {"S": "order#o1"}}
    assert req["ReturnValues"] == "ALL_NEW"


def test_update_removes_null_properties_and_pushes(table: Table) -> None:
    req = table.update(
        "Order",
        {"accountId": "a1", "orderId": "o1", "status": None},
        push={"tags": "new"},
        execute=False,
    )

    update = req["UpdateExpression"]
    assert update.startswith("REMOVE #_2 SET #_3 = list_append(if_not_exists(#_4, :_0), :_1)")
    assert req["ExpressionAttributeNames"]["#_2"] == "status"
    assert req["ExpressionAttributeValues"][":_0"] == {"L": []}
    assert req["ExpressionAttributeValues"][":_1"] == {"L": [{"S": "new"}]}


def test_update_set_expression_values(table: Table) -> None:
    req = table.update(
        "Order",
        {"accountId": "a1", "orderId": "o1"},
        set={"total": "${total} + {1}"},
        execute=False,
    )
    assert "#_2 = #_3 + :_0" in req["UpdateExpression"]


def test_update_cannot_touch_keys_or_required_fields(table: Table) -> None:
    with pytest.raises(ArgumentError, match="Cannot add hash or sort"):
        table.update("Order", {"accountId": "a1", "orderId": "o1"}, add={"pk": 1}, execute=False)
    with pytest.raises(ArgumentError, match="Cannot remove required field"):
        table.update("Order", {"accountId": "a1", "orderId": "o1"}, remove=["accountId"], execute=False)


def test_update_remove_accepts_a_single_name(table: Table) -> None:
    req = table.update("Order", {"accountId": "a1", "orderId": "o1", "total": 7}, remove="subtotal", execute=False)

    names = req["ExpressionAttributeNames"]
    assert req["UpdateExpression"].startswith("REMOVE ")
    assert "subtotal" in names.values()
    assert "total" in names.values()
    assert {"N": "7"} in req["ExpressionAttributeValues"].values()
    assert Params(remove="subtotal").remove == ("subtotal",)


def test_upsert_sets_type_and_omits_existence_condition(table: Table) -> None:
    req = table.upsert("Order", {"accountId": "a1", "orderId": "o1"}, execute=False)

    assert "ConditionExpression" not in req
    assert "_type" in req["ExpressionAttributeNames"].values()


def test_update_validates_enums(table: Table) -> None:
    with pytest.raises(ValidationError) as exc:
        table.update("Order", {"accountId": "a1", "orderId": "o1", "status": "lost"}, execute=False)
    assert exc.value.details == {"status": 'Bad value "lost" for "status"'}


def test_delete_request_with_where_condition(table: Table) -> None:
    req = table.remove(
        "Order",
        {"accountId": "a1", "orderId": "o1"},
        where="${status} = {\"open\"}",
        execute=False,
    )
    assert req["ConditionExpression"] == "#_0 = :_0"
    assert req["ReturnValues"] == "ALL_OLD"
    assert req["Key"] == {"pk": {"S": "account#a1"}, "sk": {"S": "order#o1"}}


def test_get_with_projection_and_consistency(table: Table) -> None:
    req = table.get("Order", {"accountId": "a1", "orderId": "o1"}, fields=["total"], consistent=True, execute=False)
    assert req["ProjectionExpression"] == "#_0"
    assert req["ExpressionAttributeNames"] == {"#_0": "total"}
    assert req["ConsistentRead"] is True


def test_count_and_select(table: Table) -> None:
    req = table.find("Order", {"accountId": "a1"}, count=True, execute=False)
    assert req["Select"] == "COUNT"
    with pytest.raises(ArgumentError, match="SPECIFIC_ATTRIBUTES"):
        table.find("Order", {"accountId": "a1"}, fields=["total"], select="ALL_ATTRIBUTES", execute=False)


def test_pre_and_post_format_hooks() -> None:
    seen: list[str] = []

    def pre_format(model: str, req: dict) -> dict:
        seen.append(model)
        return {**req, "ReturnConsumedCapacity": "INDEXES"}

    table = Table("app-table", client=FakeDynamoDBClient(), schema=SCHEMA, pre_format=pre_format)
    req = table.get(
        "Order",
        {"accountId": "a1", "orderId": "o1"},
        post_format=lambda model, r: None,
        execute=False,
    )
    assert seen == ["Order"]
    assert req["ReturnConsumedCapacity"] == "INDEXES"


def test_expression_compiles_once() -> None:
    definition = ModelDefinition.generic_model(
        "_Generic", indexes=parse_indexes({"primary": {"hash": "pk", "sort": "sk"}})
    )
    expression = Expression(
        definition,
        Op.GET,
        Prepared(properties={"pk": "a", "sk": "b"}),
        Params(),
        table_name="app-table",
        index=definition.primary,
    )
    assert expression.command()["Key"] == {"pk": {"S": "a"}, "sk": {"S": "b"}}
    with pytest.raises(ArgumentError, match="already been compiled"):
        expression.command()


def test_batch_requests_are_minimal(table: Table) -> None:
    from onetable_py import Batch

    batch = Batch()
    req = table.get("Order", {"accountId": "a1", "orderId": "o1"}, batch=batch, execute=False)
    assert req == {"TableName": "app-table", "Key": {"pk": {"S": "account#a1"}, "sk": {"S": "order#o1"}}}
