from __future__ import annotations

import json
import logging
import os
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

log = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "SingleTable/Metrics.1"
DEFAULT_DIMENSIONS = ("Table", "Tenant", "Source", "Index", "Model", "Operation")

_DYNAMO_OPS = {
    "get": "getItem",
    "find": "query",
    "put": "putItem",
    "update": "updateItem",
    "delete": "deleteItem",
    "scan": "scan",
    "batchGet": "batchGet",
    "batchWrite": "batchWrite",
    "transactGet": "transactGet",
    "transactWrite": "transactWrite",
}
_WRITES = frozenset({"put", "update", "delete", "batchWrite", "transactWrite"})

type MetricsSink = Callable[[dict[str, Any]], None]


@dataclass(frozen=True)
class OperationMetric:
    table: str
    model: str
    operation: str
    seconds: float
    count: int = 1
    scanned: int = 1
    capacity: float = 0.0
    index: str = "primary"
    source: str | None = None


@dataclass
class _Counter:
    dimensions: tuple[str, ...]
    dimension_values: dict[str, str]
    totals: dict[str, float] = field(
        default_factory=lambda: {"count": 0, "latency": 0, "read": 0, "requests": 0, "scanned": 0, "write": 0}
    )


def log_sink(payload: dict[str, Any]) -> None:
    log.info("OneTable Custom Metrics %s", json.dumps(payload, separators=(",", ":"), default=str))


class Metrics:
    """Aggregates per-operation counters and emits CloudWatch embedded-metric payloads.

    Counters are keyed by each prefix of the configured dimension chain, so a request
    on model ``User`` adds to ``Table``, ``Table.Tenant`` ... ``Table...Model.Operation``.
    Buffered counters flush after ``max_requests`` requests or ``period`` seconds.
    """

    def __init__(
        self,
        *,
        sink: MetricsSink | None = None,
        namespace: str = DEFAULT_NAMESPACE,
        dimensions: Sequence[str] = DEFAULT_DIMENSIONS,
        tenant: str | None = None,
        source: str | None = None,
        properties: Mapping[str, Any] | None = None,
        max_requests: int = 100,
        period: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_requests <= 0:
            raise ValueError("max_requests must be > 0")
        self.sink: MetricsSink = sink or log_sink
        self.namespace = namespace
        self.dimensions = tuple(dimensions)
        self.tenant = tenant
        self.source = source or os.environ.get("AWS_LAMBDA_FUNCTION_NAME") or "Default"
        self.properties = dict(properties or {})
        self.max_requests = max_requests
        self.period = period
        self._clock = clock
        self._lock = threading.Lock()
        self._counters: dict[str, _Counter] = {}
        self._requests = 0
        self._last_flushed = clock()

    def add(self, metric: OperationMetric) -> None:
        dimension_values = {
            "Table": metric.table,
            "Tenant": self.tenant,
            "Source": metric.source or self.source,
            "Index": metric.index,
            "Model": metric.model,
            "Operation": _DYNAMO_OPS.get(metric.operation, metric.operation),
        }
        rw = "write" if metric.operation in _WRITES else "read"

        with self._lock:
            keys: list[str] = []
            dims: list[str] = []
            for name in self.dimensions:
                value = dimension_values.get(name)
                if not value:
                    continue
                keys.append(value)
                dims.append(name)
                key = ".".join(keys)
                counter = self._counters.get(key)
                if counter is None:
                    counter = _Counter(
                        dimensions=tuple(dims),
                        dimension_values={d: str(dimension_values[d]) for d in dims},
                    )
                    self._counters[key] = counter
                totals = counter.totals
                totals[rw] += metric.capacity
                totals["latency"] += metric.seconds * 1000
                totals["count"] += metric.count
                totals["scanned"] += metric.scanned
                totals["requests"] += 1

            self._requests += 1
            now = self._clock()
            due = self._requests >= self.max_requests or self._last_flushed + self.period < now

        if due:
            self.flush()

    def flush(self) -> list[dict[str, Any]]:
        """Emit one payload per buffered counter and reset the buffer."""
        with self._lock:
            counters = self._counters
            self._counters = {}
            self._requests = 0
            self._last_flushed = self._clock()

        payloads = [self._payload(counter) for counter in counters.values()]
        for payload in payloads:
            self.sink(payload)
        return payloads

    def _payload(self, counter: _Counter) -> dict[str, Any]:
        totals = dict(counter.totals)
        requests = totals["requests"] or 1
        for name in ("latency", "count", "scanned"):
            totals[name] = totals[name] / requests
        totals = {k: v for k, v in totals.items() if v != 0}

        return {
            "_aws": {
                "Timestamp": int(self._clock() * 1000),
                "CloudWatchMetrics": [
                    {
                        "Dimensions": [list(counter.dimensions)],
                        "Namespace": self.namespace,
                        "Metrics": [
                            {"Name": name, "Unit": "Milliseconds" if name == "latency" else "Count"}
                            for name in totals
                        ],
                    }
                ],
            },
            **totals,
            **counter.dimension_values,
            **self.properties,
        }


class MetricsRegistry:
    """Explicit set of live ``Metrics`` collectors, flushed together on shutdown."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._metrics: dict[str, Metrics] = {}

    def register(self, name: str, metrics: Metrics) -> None:
        with self._lock:
            self._metrics[name] = metrics

    def unregister(self, name: str) -> Metrics | None:
        with self._lock:
            return self._metrics.pop(name, None)

    def get(self, name: str) -> Metrics | None:
        with self._lock:
            return self._metrics.get(name)

    def __len__(self) -> int:
        with self._lock:
            return len(self._metrics)

    def flush_all(self) -> int:
        with self._lock:
            collectors = list(self._metrics.values())
        emitted = 0
        for metrics in collectors:
            emitted += len(metrics.flush())
        return emitted
