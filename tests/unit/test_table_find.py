from __future__ import annotations

from onetable_py import Table, decode_cursor
from onetable_py.mocks import ANY, FakeDynamoDBClient

SCHEMA = {
    "version": "0.0.1",
    "indexes": {
        "primary": {"hash": "pk", "sort": "sk"},
        "gs1": {"hash": "gs1pk", "sort": "gs1sk", "project": "keys"},
    },
    "models": {
        "User": {
            "pk": {"type": "string", "value": "user#${id}"},
            "sk": {"type": "string", "value": "user#"},
            "id": {"type": "string"},
            "name": {"type": "string"},
            "email": {"type": "string"},
            "gs1pk": {"type": "string", "value": "email#${email}"},
            "gs1sk": {"type": "string", "value": "user#${id}"},
        },
        "Order": {
            "pk": {"type": "string", "value": "account#${accountId}"},
            "sk": {"type": "string", "value": "order#${orderId}"},
            "accountId": {"type": "string"},
            "orderId": {"type": "string"},
            "total": {"type": "number"},
        },
    },
}


def _order_item(order_id: str) -> dict:
    return {
        "pk": {"S": "account#a1"},
        "sk": {"S": f"order#{order_id}"},
        "accountId": {"S": "a1"},
        "orderId": {"S": order_id},
        "total": {"N": "5"},
        "_type": {"S": "Order"},
    }


def _key(order_id: str) -> dict:
    return {"pk": {"S": "account#a1"}, "sk": {"S": f"order#{order_id}"}}


def _user_item(user_id: str) -> dict:
    return {
        "pk": {"S": f"user#{user_id}"},
        "sk": {"S": "user#"},
        "id": {"S": user_id},
        "name": {"S": f"name-{user_id}"},
        "email": {"S": "shared@x.com"},
        "gs1pk": {"S": "email#shared@x.com"},
        "gs1sk": {"S": f"user#{user_id}"},
        "_type": {"S": "User"},
    }


def test_find_reads_every_page_without_a_limit() -> None:
    client = FakeDynamoDBClient()
    client.expect("query", response={"Items": [_order_item("o1")], "Count": 1, "LastEvaluatedKey": _key("o1")})
    client.expect(
        "query",
        {"ExclusiveStartKey": _key("o1")},
        response={"Items": [_order_item("o2")], "Count": 1, "LastEvaluatedKey": _key("o2")},
    )
    client.expect("query", {"ExclusiveStartKey": _key("o2")}, response={"Items": [_order_item("o3")], "Count": 1})
    table = Table("app-table", client=client, schema=SCHEMA)

    page = table.find("Order", {"accountId": "a1"})

    assert [item["orderId"] for item in page] == ["o1", "o2", "o3"]
    assert page.start is None
    assert page.next_cursor is None
    assert page.count == 3
    assert list(page.next()) == []
    client.assert_no_pending()


def test_find_limit_counts_items_and_next_resumes() -> None:
    client = FakeDynamoDBClient()
    client.expect(
        "query",
        {"Limit": 2},
        response={"Items": [_order_item("o1")], "Count": 1, "LastEvaluatedKey": _key("o1")},
    )
    client.expect(
        "query",
        {"Limit": 1, "ExclusiveStartKey": _key("o1")},
        response={"Items": [_order_item("o2")], "Count": 1, "LastEvaluatedKey": _key("o2")},
    )
    client.expect(
        "query",
        {"Limit": 2, "ExclusiveStartKey": _key("o2")},
        response={"Items": [_order_item("o3")], "Count": 1},
    )
    table = Table("app-table", client=client, schema=SCHEMA)

    page = table.find("Order", {"accountId": "a1"}, limit=2)
    assert [item["orderId"] for item in page] == ["o1", "o2"]
    assert page.start == {"pk": "account#a1", "sk": "order#o2"}
    assert page.has_next
    assert decode_cursor(page.next_cursor or "").last_key == _key("o2")

    second = page.next()
    assert [item["orderId"] for item in second] == ["o3"]
    assert not second.has_next
    assert len(second.next()) == 0
    client.assert_no_pending()


def test_max_pages_caps_requests() -> None:
    client = FakeDynamoDBClient()
    client.expect("query", response={"Items": [_order_item("o1")], "Count": 1, "LastEvaluatedKey": _key("o1")})
    table = Table("app-table", client=client, schema=SCHEMA)

    page = table.find("Order", {"accountId": "a1"}, max_pages=1)
    assert len(page) == 1
    assert page.start == {"pk": "account#a1", "sk": "order#o1"}
    client.assert_no_pending()


def test_cursor_becomes_exclusive_start_key() -> None:
    client = FakeDynamoDBClient()
    client.expect("query", response={"Items": [_order_item("o1")], "Count": 1, "LastEvaluatedKey": _key("o1")})
    table = Table("app-table", client=client, schema=SCHEMA)

    page = table.find("Order", {"accountId": "a1"}, max_pages=1)
    req = table.find("Order", {"accountId": "a1"}, cursor=page.next_cursor, execute=False)
    assert req["ExclusiveStartKey"] == _key("o1")


def test_high_level_find_skips_items_of_other_models() -> None:
    client = FakeDynamoDBClient()
    client.expect("query", response={"Items": [_order_item("o1"), _user_item("u1")], "Count": 2})
    table = Table("app-table", client=client, schema=SCHEMA)

    page = table.find("Order", {"accountId": "a1"})
    assert [item["_type"] for item in page] == ["Order"]


def test_count_mode_returns_count() -> None:
    client = FakeDynamoDBClient()
    client.expect("query", {"Select": "COUNT"}, response={"Count": 42})
    table = Table("app-table", client=client, schema=SCHEMA)

    page = table.find("Order", {"accountId": "a1"}, count=True)
    assert page.count == 42
    assert list(page) == []


def test_follow_rereads_items_through_primary_index() -> None:
    client = FakeDynamoDBClient(ordered=False)
    keys_only = [
        {k: v for k, v in _user_item(uid).items() if k in ("pk", "sk", "gs1pk", "gs1sk")} for uid in ("u1", "u2")
    ]
    client.expect("query", {"IndexName": "gs1"}, response={"Items": keys_only, "Count": 2})
    client.expect(
        "get_item",
        {"Key": {"pk": {"S": "user#u1"}, "sk": {"S": "user#"}}},
        response={"Item": _user_item("u1")},
    )
    client.expect(
        "get_item",
        {"Key": {"pk": {"S": "user#u2"}, "sk": {"S": "user#"}}},
        response={"Item": _user_item("u2")},
    )
    table = Table("app-table", client=client, schema=SCHEMA)

    page = table.find("User", {"email": "shared@x.com"}, index="gs1", follow=True)

    assert [item["name"] for item in page] == ["name-u1", "name-u2"]
    assert "pk" not in page[0]
    client.assert_no_pending()


def test_fetch_groups_items_by_type() -> None:
    client = FakeDynamoDBClient()
    client.expect(
        "query",
        {
            "FilterExpression": "#_0 = :_0 OR #_1 = :_1",
            "KeyConditionExpression": "#_2 = :_2",
            "ExpressionAttributeNames": {"#_0": "_type", "#_1": "_type", "#_2": "pk"},
            "ExpressionAttributeValues": {":_0": {"S": "Order"}, ":_1": {"S": "User"}, ":_2": ANY},
        },
        response={"Items": [_order_item("o1"), _user_item("u1"), _order_item("o2")], "Count": 3},
    )
    table = Table("app-table", client=client, schema=SCHEMA)

    grouped = table.fetch(["Order", "User"], {"pk": "account#a1"})

    assert sorted(grouped) == ["Order", "User"]
    assert [item["orderId"] for item in grouped["Order"]] == ["o1", "o2"]
    assert grouped["User"][0]["name"] == "name-u1"


def test_scan_items_returns_raw_generic_items() -> None:
    client = FakeDynamoDBClient()
    client.expect("scan", response={"Items": [_order_item("o1")], "Count": 1})
    table = Table("app-table", client=client, schema=SCHEMA)

    page = table.scan_items()
    assert page[0]["sk"] == "order#o1"
    assert page[0]["total"] == 5


def test_group_by_type() -> None:
    table = Table("app-table", client=FakeDynamoDBClient(), schema=SCHEMA)
    grouped = table.group_by_type([{"_type": "A", "n": 1}, {"_type": "B"}, {"_type": "A", "n": 2}, {"n": 3}])
    assert [item["n"] for item in grouped["A"]] == [1, 2]
    assert grouped["_unknown"] == [{"n": 3}]
