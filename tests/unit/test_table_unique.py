from __future__ import annotations

import pytest
from botocore.exceptions import ClientError

from onetable_py import ArgumentError, Batch, Table, Transaction, UniqueConflictError
from onetable_py.mocks import FakeDynamoDBClient

SCHEMA = {
    "version": "0.0.1",
    "indexes": {"primary": {"hash": "pk", "sort": "sk"}},
    "models": {
        "Account": {
            "pk": {"type": "string", "value": "account#${id}"},
            "sk": {"type": "string", "value": "account#"},
            "id": {"type": "string"},
            "email": {"type": "string", "unique": True},
            "name": {"type": "string"},
        }
    },
}

UNIQUE_KEY = {"pk": {"S": "_unique#Account#email#a@x.com"}, "sk": {"S": "_unique#"}}
ACCOUNT_KEY = {"pk": {"S": "account#a1"}, "sk": {"S": "account#"}}


def test_create_writes_unique_sentinel_in_the_same_transaction() -> None:
    client = FakeDynamoDBClient()

    def validate(req: dict) -> None:
        items = req["TransactItems"]
        assert [next(iter(i)) for i in items] == ["Put", "Put"]
        sentinel, account = items[0]["Put"], items[1]["Put"]
        assert sentinel["TableName"] == "app-table"
        assert sentinel["Item"] == {**UNIQUE_KEY, "_type": {"S": "_Unique"}}
        assert "attribute_not_exists" in sentinel["ConditionExpression"]
        assert account["Item"]["email"] == {"S": "a@x.com"}
        assert "ReturnValues" not in account

    client.expect("transact_write_items", validate)
    table = Table("app-table", client=client, schema=SCHEMA)

    created = table.create("Account", {"id": "a1", "email": "a@x.com", "name": "Ann"})

    assert created == {"id": "a1", "email": "a@x.com", "name": "Ann", "_type": "Account"}
    client.assert_no_pending()


def test_create_raises_unique_conflict_on_cancelled_transaction() -> None:
    client = FakeDynamoDBClient()
    err = ClientError(
        {
            "Error": {"Code": "TransactionCanceledException", "Message": "Transaction cancelled"},
            "CancellationReasons": [{"Code": "ConditionalCheckFailed"}, {"Code": "None"}],
        },
        "TransactWriteItems",
    )
    client.expect("transact_write_items", error=err)
    table = Table("app-table", client=client, schema=SCHEMA)

    with pytest.raises(UniqueConflictError) as exc:
        table.create("Account", {"id": "a1", "email": "a@x.com"})

    assert exc.value.model == "Account"
    assert exc.value.fields == ("email",)
    assert exc.value.context["reason_codes"] == ("ConditionalCheckFailed", "None")


def test_create_joins_a_caller_transaction() -> None:
    table = Table("app-table", client=FakeDynamoDBClient(), schema=SCHEMA)
    transaction = Transaction()

    assert not transaction
    assert table.create("Account", {"id": "a1", "email": "a@x.com"}, transaction=transaction) is None
    assert len(transaction) == 2
    sentinel, account = (item["Put"] for item in transaction.items)
    assert sentinel["Item"]["pk"] == UNIQUE_KEY["pk"]
    assert account["Item"]["pk"] == ACCOUNT_KEY["pk"]


def test_remove_joins_a_caller_transaction() -> None:
    client = FakeDynamoDBClient()
    client.expect(
        "get_item",
        response={"Item": {**ACCOUNT_KEY, "id": {"S": "a1"}, "email": {"S": "a@x.com"}, "_type": {"S": "Account"}}},
    )
    table = Table("app-table", client=client, schema=SCHEMA)
    transaction = Transaction()

    assert table.remove("Account", {"id": "a1"}, transaction=transaction) is None
    assert [item["Delete"]["Key"] for item in transaction.items] == [UNIQUE_KEY, ACCOUNT_KEY]
    assert client.methods() == ["get_item"]


def test_unique_sentinel_rows_are_dropped_from_parsed_reads() -> None:
    client = FakeDynamoDBClient()
    client.expect(
        "scan",
        response={
            "Items": [
                {**UNIQUE_KEY, "_type": {"S": "_Unique"}},
                {**ACCOUNT_KEY, "id": {"S": "a1"}, "email": {"S": "a@x.com"}, "_type": {"S": "Account"}},
            ],
            "Count": 2,
        },
    )
    table = Table("app-table", client=client, schema=SCHEMA)

    page = table.scan_items(parse=True)

    assert list(page) == [{"id": "a1", "email": "a@x.com", "_type": "Account"}]


def test_remove_reads_the_item_then_deletes_both_in_a_transaction() -> None:
    client = FakeDynamoDBClient()
    client.expect(
        "get_item",
        {"Key": ACCOUNT_KEY, "ConsistentRead": True},
        response={
            "Item": {
                **ACCOUNT_KEY,
                "id": {"S": "a1"},
                "email": {"S": "a@x.com"},
                "_type": {"S": "Account"},
            }
        },
    )

    def validate(req: dict) -> None:
        items = req["TransactItems"]
        assert [i["Delete"]["Key"] for i in items] == [UNIQUE_KEY, ACCOUNT_KEY]

    client.expect("transact_write_items", validate)
    table = Table("app-table", client=client, schema=SCHEMA)

    removed = table.remove("Account", {"id": "a1"})

    assert removed == {"id": "a1", "email": "a@x.com", "_type": "Account"}
    client.assert_no_pending()


def test_remove_of_missing_item_is_a_no_op() -> None:
    client = FakeDynamoDBClient()
    client.expect("get_item", response={})
    table = Table("app-table", client=client, schema=SCHEMA)

    assert table.remove("Account", {"id": "gone"}) is None
    assert client.methods() == ["get_item"]


def test_unique_fields_cannot_be_batched() -> None:
    table = Table("app-table", client=FakeDynamoDBClient(), schema=SCHEMA)
    with pytest.raises(ArgumentError, match="Cannot use batch"):
        table.create("Account", {"id": "a1", "email": "a@x.com"}, batch=Batch())
