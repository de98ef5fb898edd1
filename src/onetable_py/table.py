from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

import boto3
from boto3.dynamodb.types import TypeSerializer
from botocore.exceptions import ClientError

from .aws_errors import map_client_error as _map_client_error
from .aws_errors import map_transaction_error as _map_transaction_error
from .encryption import Cipher
from .entity import Entity
from .errors import ArgumentError, BatchRetryExceededError, SchemaError
from .ids import make_generator, uid, ulid, uuid4
from .metrics import Metrics, MetricsRegistry, OperationMetric
from .model import Index, ModelDefinition, parse_indexes
from .params import Params
from .properties import WalkSettings
from .query import Op
from .results import consumed_capacity, unmarshall
from .schema_doc import check_schema, schema_params
from .transaction import Batch, Transaction
from .transform import TransformPipeline, from_dynamo, to_dynamo
from .validation import validate_index_name, validate_table_name

log = logging.getLogger(__name__)

GENERIC_MODEL = "_Generic"
UNIQUE_MODEL = "_Unique"
DEFAULT_INDEXES: dict[str, Any] = {"primary": {"hash": "pk", "sort": "sk"}}

type Intercept = Callable[[str, str, dict[str, Any], Params, Mapping[str, Any] | None], dict[str, Any] | None]

_serializer = TypeSerializer()


def _backoff_seconds(attempt: int) -> float:
    seconds = 0.05 * (2.0 ** (attempt - 1))
    if seconds > 1.0:
        return 1.0
    return seconds


def _chunked[T](items: Sequence[T], size: int) -> Sequence[Sequence[T]]:
    if size <= 0:
        raise ValueError("size must be > 0")
    return [items[i : i + size] for i in range(0, len(items), size)]


class Table:
    """A single DynamoDB table holding any number of schema-defined models."""

    def __init__(
        self,
        name: str,
        *,
        client: Any | None = None,
        schema: Mapping[str, Any] | None = None,
        delimiter: str = "#",
        type_field: str = "_type",
        created_field: str = "created",
        updated_field: str = "updated",
        timestamps: bool | str = False,
        iso_dates: bool = False,
        nulls: bool = False,
        hidden: bool = True,
        crypto: Mapping[str, Mapping[str, Any]] | None = None,
        generate: str | Callable[[], str] = "ulid",
        intercept: Intercept | None = None,
        pre_format: Callable[[str, dict[str, Any]], dict[str, Any] | None] | None = None,
        metrics: bool | Metrics = False,
        registry: MetricsRegistry | None = None,
        rand_bytes: Callable[[int], bytes] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        validate_table_name(name)
        if timestamps not in (True, False, "create", "update"):
            raise ArgumentError(f"Invalid timestamps option {timestamps!r}", context={"timestamps": timestamps})

        self.name = name
        self.client: Any = client or boto3.client("dynamodb")
        self.intercept = intercept
        self.pre_format = pre_format
        self._rand_bytes = rand_bytes or os.urandom
        self._clock = clock or (lambda: datetime.now(UTC))
        self._options: dict[str, Any] = {
            "delimiter": delimiter,
            "type_field": type_field,
            "created_field": created_field,
            "updated_field": updated_field,
            "timestamps": timestamps,
            "iso_dates": iso_dates,
            "nulls": nulls,
            "hidden": hidden,
        }
        self._generate = make_generator(generate, rand_bytes=self._rand_bytes)
        self._cipher = Cipher(crypto, rand_bytes=self._rand_bytes)

        if isinstance(metrics, Metrics):
            self.metrics: Metrics | None = metrics
        elif metrics:
            self.metrics = Metrics()
        else:
            self.metrics = None
        if registry is not None and self.metrics is not None:
            registry.register(name, self.metrics)

        self._context: dict[str, Any] = {}
        self._entities: dict[str, Entity] = {}
        self._schema_models: dict[str, dict[str, Any]] = {}
        self._schema_version = "0.0.1"
        self._indexes: dict[str, Index] = {}
        self.set_schema(schema)

    # Configuration

    @property
    def delimiter(self) -> str:
        return str(self._options["delimiter"])

    @property
    def type_field(self) -> str:
        return str(self._options["type_field"])

    @property
    def indexes(self) -> Mapping[str, Index]:
        return self._indexes

    def set_schema(self, schema: Mapping[str, Any] | None) -> None:
        """Replace the schema: indexes, params and every model."""
        if schema is not None:
            schema = check_schema(schema)
            self._options.update(schema_params(schema))
            self._schema_version = str(schema["version"])
            raw_indexes = schema["indexes"]
        else:
            raw_indexes = DEFAULT_INDEXES

        for index_name in raw_indexes:
            validate_index_name(index_name)
        self._indexes = parse_indexes(raw_indexes)
        self.pipeline = TransformPipeline(iso_dates=bool(self._options["iso_dates"]), cipher=self._cipher)

        self._entities = {}
        self._schema_models = {}
        self._generic = Entity(
            self, ModelDefinition.generic_model(GENERIC_MODEL, indexes=self._indexes, type_field=self.type_field)
        )
        self.unique_entity = Entity(
            self,
            ModelDefinition.generic_model(
                UNIQUE_MODEL, indexes={"primary": self._indexes["primary"]}, type_field=self.type_field
            ),
        )
        for model_name, fields in ((schema or {}).get("models") or {}).items():
            self.add_model(model_name, fields)

    def get_schema(self) -> dict[str, Any]:
        indexes: dict[str, Any] = {}
        for name, index in self._indexes.items():
            spec: dict[str, Any] = {"hash": index.hash}
            if index.sort:
                spec["sort"] = index.sort
            if index.type == "local":
                spec["type"] = "local"
            if index.project != "all":
                spec["project"] = list(index.project) if isinstance(index.project, tuple) else index.project
            if index.follow:
                spec["follow"] = True
            indexes[name] = spec
        return {
            "version": self._schema_version,
            "indexes": indexes,
            "models": {name: dict(fields) for name, fields in self._schema_models.items()},
            "params": {
                "isoDates": self._options["iso_dates"],
                "nulls": self._options["nulls"],
                "timestamps": self._options["timestamps"],
                "typeField": self._options["type_field"],
                "createdField": self._options["created_field"],
                "updatedField": self._options["updated_field"],
                "hidden": self._options["hidden"],
                "separator": self._options["delimiter"],
            },
        }

    # Models

    def add_model(self, name: str, fields: Mapping[str, Mapping[str, Any]]) -> Entity:
        if name in (GENERIC_MODEL, UNIQUE_MODEL):
            raise SchemaError(f"Model name {name} is reserved", context={"model": name})
        definition = ModelDefinition.from_schema(
            name,
            fields,
            indexes=self._indexes,
            type_field=self.type_field,
            created_field=str(self._options["created_field"]),
            updated_field=str(self._options["updated_field"]),
            timestamps=self._options["timestamps"],
            nulls=bool(self._options["nulls"]),
            hidden=bool(self._options["hidden"]),
        )
        entity = Entity(self, definition)
        self._entities[name] = entity
        self._schema_models[name] = dict(fields)
        log.debug("added model %r to table %r", name, self.name)
        return entity

    def remove_model(self, name: str) -> None:
        if name not in self._entities:
            raise ArgumentError(f"Cannot find model {name}", context={"model": name})
        del self._entities[name]
        del self._schema_models[name]

    def get_model(self, name: str) -> Entity:
        entity = self._entities.get(name)
        if entity is None:
            raise ArgumentError(f"Cannot find model {name}", context={"model": name})
        return entity

    def list_models(self) -> list[str]:
        return list(self._entities)

    def entity_for(self, type_name: str) -> Entity | None:
        if type_name == UNIQUE_MODEL:
            return self.unique_entity
        return self._entities.get(type_name)

    # Context

    def get_context(self) -> dict[str, Any]:
        return self._context

    def set_context(self, context: Mapping[str, Any] | None = None, merge: bool = False) -> Table:
        if merge:
            self._context.update(context or {})
        else:
            self._context = dict(context or {})
        return self

    def add_context(self, context: Mapping[str, Any]) -> Table:
        return self.set_context(context, merge=True)

    def clear_context(self) -> Table:
        self._context = {}
        return self

    def walk_settings(self) -> WalkSettings:
        return WalkSettings(
            delimiter=self.delimiter,
            pipeline=self.pipeline,
            generate=self._generate,
            context=dict(self._context),
            rand_bytes=self._rand_bytes,
        )

    def now(self) -> datetime:
        return self._clock()

    # High-level shortcuts

    def create(self, model: str, properties: Mapping[str, Any], params: Any = None, **options: Any) -> Any:
        return self.get_model(model).create(properties, params, **options)

    def get(self, model: str, properties: Mapping[str, Any], params: Any = None, **options: Any) -> Any:
        return self.get_model(model).get(properties, params, **options)

    def find(self, model: str, properties: Mapping[str, Any] | None = None, params: Any = None, **options: Any) -> Any:
        return self.get_model(model).find(properties, params, **options)

    def scan(self, model: str, properties: Mapping[str, Any] | None = None, params: Any = None, **options: Any) -> Any:
        return self.get_model(model).scan(properties, params, **options)

    def update(self, model: str, properties: Mapping[str, Any], params: Any = None, **options: Any) -> Any:
        return self.get_model(model).update(properties, params, **options)

    def upsert(self, model: str, properties: Mapping[str, Any], params: Any = None, **options: Any) -> Any:
        return self.get_model(model).upsert(properties, params, **options)

    def remove(self, model: str, properties: Mapping[str, Any], params: Any = None, **options: Any) -> Any:
        return self.get_model(model).remove(properties, params, **options)

    # Low-level API

    def get_item(self, properties: Mapping[str, Any], params: Any = None, **options: Any) -> Any:
        return self._generic.get_item(properties, params, **options)

    def put_item(self, properties: Mapping[str, Any], params: Any = None, **options: Any) -> Any:
        return self._generic.put_item(properties, params, **options)

    def update_item(self, properties: Mapping[str, Any], params: Any = None, **options: Any) -> Any:
        return self._generic.update_item(properties, params, **options)

    def delete_item(self, properties: Mapping[str, Any], params: Any = None, **options: Any) -> Any:
        return self._generic.delete_item(properties, params, **options)

    def query_items(self, properties: Mapping[str, Any] | None = None, params: Any = None, **options: Any) -> Any:
        return self._generic.query_items(properties, params, **options)

    def scan_items(self, properties: Mapping[str, Any] | None = None, params: Any = None, **options: Any) -> Any:
        return self._generic.scan_items(properties, params, **options)

    def fetch(self, models: list[str], properties: Mapping[str, Any] | None = None, params: Any = None, **options: Any) -> Any:
        return self._generic.fetch(models, properties, params, **options)

    def group_by_type(self, items: Iterable[Mapping[str, Any]]) -> dict[str, list[dict[str, Any]]]:
        result: dict[str, list[dict[str, Any]]] = {}
        for item in items:
            result.setdefault(str(item.get(self.type_field) or "_unknown"), []).append(dict(item))
        return result

    # Transport

    def call(
        self,
        op: Op,
        request: Mapping[str, Any],
        *,
        model: str,
        index: str = "primary",
        params: Params | None = None,
    ) -> Mapping[str, Any]:
        params = params or Params()
        start = time.monotonic()
        try:
            response = getattr(self.client, op.client_method)(**request)
        except ClientError as err:
            if params.throw is False:
                log.info("%s on %r failed, returning an empty result: %s", op.client_method, model, err)
                return {}
            log.error("%s on %r failed: %s", op.client_method, model, err)
            raise _map_client_error(err) from err

        if self.metrics is not None:
            self.metrics.add(
                OperationMetric(
                    table=self.name,
                    model=model,
                    operation=op.value,
                    seconds=time.monotonic() - start,
                    count=int(response.get("Count", 1)),
                    scanned=int(response.get("ScannedCount", 1)),
                    capacity=consumed_capacity(response),
                    index=index,
                )
            )
        level = logging.INFO if params.log else logging.DEBUG
        log.log(level, "%s result for %r: %s", op.client_method, model, response)
        return response

    def transact(self, kind: str, transaction: Transaction, params: Any = None, **options: Any) -> Any:
        """Run an accumulated transaction. ``kind`` is ``"write"`` or ``"get"``."""
        params = Params.of(params, **options).with_defaults(parse=True)
        if not transaction.items:
            raise ArgumentError("transaction has no items")

        match kind:
            case "write":
                start = time.monotonic()
                try:
                    response = self.client.transact_write_items(TransactItems=transaction.items)
                except ClientError as err:
                    log.error("transact_write_items on %r failed: %s", self.name, err)
                    raise _map_transaction_error(err) from err
                self._track("transactWrite", start, response)
                return None
            case "get":
                start = time.monotonic()
                try:
                    response = self.client.transact_get_items(TransactItems=transaction.items)
                except ClientError as err:
                    log.error("transact_get_items on %r failed: %s", self.name, err)
                    raise _map_transaction_error(err) from err
                self._track("transactGet", start, response)
                raw_items = [r["Item"] for r in response.get("Responses") or [] if r.get("Item")]
                return self._parse_mixed(raw_items, params)
            case _:
                raise ArgumentError(f"Unknown transaction kind {kind!r}", context={"kind": kind})

    def batch_get(
        self,
        batch: Batch,
        params: Any = None,
        *,
        max_retries: int = 5,
        sleep: Callable[[float], None] | None = time.sleep,
        **options: Any,
    ) -> list[dict[str, Any]]:
        params = Params.of(params, **options).with_defaults(parse=True)
        if max_retries < 0:
            raise ArgumentError("max_retries must be >= 0")

        start = time.monotonic()
        raw_items: list[dict[str, Any]] = []
        for table_name, keys in batch.gets.items():
            base_req: dict[str, Any] = {"ConsistentRead": bool(params.consistent)}
            base_req.update(batch.projections.get(table_name, {}))

            for chunk in _chunked(keys, 100):
                pending_keys = list(chunk)
                attempts = 0

                while pending_keys:
                    req = {table_name: dict(base_req, Keys=pending_keys)}
                    try:
                        resp = self.client.batch_get_item(RequestItems=req)
                    except ClientError as err:
                        log.error("batch_get_item on %r failed: %s", table_name, err)
                        raise _map_client_error(err) from err

                    raw_items.extend(resp.get("Responses", {}).get(table_name, []))

                    pending_keys = resp.get("UnprocessedKeys", {}).get(table_name, {}).get("Keys") or []
                    if pending_keys:
                        if attempts >= max_retries:
                            raise BatchRetryExceededError(operation="batch_get", unprocessed_count=len(pending_keys))
                        attempts += 1
                        if sleep is not None:
                            sleep(_backoff_seconds(attempts))

        self._track("batchGet", start, {"Count": len(raw_items)})
        return self._parse_mixed(raw_items, params)

    def batch_write(
        self,
        batch: Batch,
        *,
        max_retries: int = 5,
        sleep: Callable[[float], None] | None = time.sleep,
    ) -> None:
        if max_retries < 0:
            raise ArgumentError("max_retries must be >= 0")

        start = time.monotonic()
        for table_name, requests in batch.writes.items():
            for chunk in _chunked(requests, 25):
                pending = list(chunk)
                attempts = 0

                while pending:
                    try:
                        resp = self.client.batch_write_item(RequestItems={table_name: pending})
                    except ClientError as err:
                        log.error("batch_write_item on %r failed: %s", table_name, err)
                        raise _map_client_error(err) from err

                    pending = resp.get("UnprocessedItems", {}).get(table_name, []) or []
                    if pending:
                        if attempts >= max_retries:
                            raise BatchRetryExceededError(operation="batch_write", unprocessed_count=len(pending))
                        attempts += 1
                        if sleep is not None:
                            sleep(_backoff_seconds(attempts))
        self._track("batchWrite", start, {})

    def _parse_mixed(self, raw_items: list[Mapping[str, Any]], params: Params) -> list[dict[str, Any]]:
        primary = self._indexes["primary"]
        out: list[dict[str, Any]] = []
        for raw in raw_items:
            item = self._generic._parse(Op.GET, raw, params, primary)
            if item is not None:
                out.append(item)
        return out

    def _track(self, operation: str, start: float, response: Mapping[str, Any]) -> None:
        if self.metrics is None:
            return
        self.metrics.add(
            OperationMetric(
                table=self.name,
                model=GENERIC_MODEL,
                operation=operation,
                seconds=time.monotonic() - start,
                count=int(response.get("Count", 1)),
                capacity=consumed_capacity(response),
            )
        )

    # Utilities

    def ulid(self) -> str:
        return ulid(rand_bytes=self._rand_bytes)

    def uuid(self) -> str:
        return uuid4()

    def uid(self, size: int = 10) -> str:
        return uid(size, rand_bytes=self._rand_bytes)

    def encrypt(self, text: str, name: str = "primary") -> str:
        return self._cipher.encrypt(text, name)

    def decrypt(self, token: str) -> str:
        return self._cipher.decrypt(token)

    def marshall(self, item: Mapping[str, Any]) -> dict[str, Any]:
        return {k: _serializer.serialize(to_dynamo(v)) for k, v in item.items()}

    def unmarshall(self, item: Mapping[str, Any]) -> dict[str, Any]:
        return {k: from_dynamo(v) for k, v in unmarshall(item).items()}
