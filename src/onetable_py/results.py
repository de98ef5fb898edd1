from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

from boto3.dynamodb.types import TypeDeserializer

from .model import ModelDefinition
from .transform import TransformPipeline, from_dynamo

log = logging.getLogger(__name__)

FOLLOW_BATCH_SIZE = 10

_deserializer = TypeDeserializer()


@dataclass
class PageRun:
    """Raw output of one find/scan call across the pages it read."""

    items: list[dict[str, Any]] = field(default_factory=list)
    last_key: dict[str, Any] | None = None
    count: int = 0
    scanned: int = 0
    capacity: float = 0.0
    pages: int = 0


def unmarshall(item: Mapping[str, Any]) -> dict[str, Any]:
    return {k: _deserializer.deserialize(v) for k, v in item.items()}


def consumed_capacity(response: Mapping[str, Any]) -> float:
    consumed = response.get("ConsumedCapacity")
    if isinstance(consumed, list):
        return float(sum(c.get("CapacityUnits", 0) for c in consumed if isinstance(c, Mapping)))
    if isinstance(consumed, Mapping):
        return float(consumed.get("CapacityUnits", 0))
    return 0.0


def run_pages(
    send: Callable[[dict[str, Any]], Mapping[str, Any]],
    request: Mapping[str, Any],
    *,
    limit: int | None,
    max_pages: int,
) -> PageRun:
    """Issue a query/scan request until the key space, ``limit`` or ``max_pages`` is exhausted.

    ``limit`` counts returned items. When more are needed, the remainder is re-issued
    as the next page's ``Limit``.
    """
    run = PageRun()
    req = dict(request)
    counting = req.get("Select") == "COUNT"

    while True:
        response = send(req)
        run.pages += 1
        run.items.extend(response.get("Items") or [])
        run.count += int(response.get("Count", 0) or 0)
        run.scanned += int(response.get("ScannedCount", 0) or 0)
        run.capacity += consumed_capacity(response)

        last_key = response.get("LastEvaluatedKey") or None
        run.last_key = last_key
        if last_key is None:
            break

        got = run.count if counting else len(run.items)
        if limit and got >= limit:
            break
        if run.pages >= max_pages:
            log.debug("stopping after %d pages with more results available", run.pages)
            break

        req = {**req, "ExclusiveStartKey": last_key}
        if limit:
            req["Limit"] = limit - got
    return run


def parse_item(
    definition: ModelDefinition,
    pipeline: TransformPipeline,
    raw: Mapping[str, Any],
    *,
    include_hidden: bool = False,
) -> dict[str, Any]:
    """Convert a marshalled item into typed properties of ``definition``."""
    item = unmarshall(raw)
    if definition.generic:
        return {k: from_dynamo(v) for k, v in item.items()}
    return pipeline.read_block(definition.graph, item, include_hidden=include_hidden, model=definition.name)


def follow_items[T](
    items: Sequence[T],
    get_one: Callable[[T], T | None],
    *,
    batch_size: int = FOLLOW_BATCH_SIZE,
) -> list[T]:
    """Re-read each item through ``get_one``, ``batch_size`` at a time, preserving order.

    Each batch completes before the next is submitted. Items that are no longer
    found are dropped.
    """
    if batch_size <= 0:
        raise ValueError("batch_size must be > 0")

    out: list[T] = []
    with ThreadPoolExecutor(max_workers=batch_size) as ex:
        for start in range(0, len(items), batch_size):
            futures = [ex.submit(get_one, item) for item in items[start : start + batch_size]]
            for fut in futures:
                found = fut.result()
                if found is not None:
                    out.append(found)
    return out
