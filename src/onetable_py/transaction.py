from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from .errors import ArgumentError
from .query import Op

MaxTransactItems = 100


@dataclass
class Transaction:
    """Accumulates compiled requests to run with ``Table.transact``."""

    items: list[dict[str, Any]] = field(default_factory=list)

    def add(self, op: Op, request: Mapping[str, Any]) -> None:
        if op in (Op.FIND, Op.SCAN):
            raise ArgumentError(f"Unsupported transaction operation {op.value}", context={"op": op.value})
        if len(self.items) >= MaxTransactItems:
            raise ArgumentError(f"A transaction supports at most {MaxTransactItems} items")
        self.items.append({op.transact_action: dict(request)})

    def condition_check(self, request: Mapping[str, Any]) -> None:
        if len(self.items) >= MaxTransactItems:
            raise ArgumentError(f"A transaction supports at most {MaxTransactItems} items")
        self.items.append({"ConditionCheck": dict(request)})

    def __len__(self) -> int:
        return len(self.items)


@dataclass
class Batch:
    """Accumulates compiled get or write requests for ``Table.batch_get`` / ``Table.batch_write``."""

    gets: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    projections: dict[str, dict[str, Any]] = field(default_factory=dict)
    writes: dict[str, list[dict[str, Any]]] = field(default_factory=dict)

    def add(self, op: Op, request: Mapping[str, Any]) -> None:
        table_name = str(request["TableName"])
        match op:
            case Op.GET:
                self.gets.setdefault(table_name, []).append(dict(request["Key"]))
                if request.get("ProjectionExpression"):
                    self.projections[table_name] = {
                        "ProjectionExpression": request["ProjectionExpression"],
                        "ExpressionAttributeNames": dict(request.get("ExpressionAttributeNames") or {}),
                    }
            case Op.PUT:
                self.writes.setdefault(table_name, []).append({"PutRequest": {"Item": dict(request["Item"])}})
            case Op.DELETE:
                self.writes.setdefault(table_name, []).append({"DeleteRequest": {"Key": dict(request["Key"])}})
            case Op.FIND | Op.SCAN | Op.UPDATE:
                raise ArgumentError(f"Unsupported batch operation {op.value}", context={"op": op.value})

    def __len__(self) -> int:
        return sum(len(v) for v in self.gets.values()) + sum(len(v) for v in self.writes.values())
