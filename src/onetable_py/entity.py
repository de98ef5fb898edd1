from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from .errors import ArgumentError, ConditionFailedError, UniqueConflictError
from .expression import Expression
from .model import Field, Index, ModelDefinition
from .params import Params
from .properties import Prepared, init_properties, prepare_properties, select_index
from .query import Op, Page, encode_cursor
from .results import follow_items, parse_item, run_pages, unmarshall
from .template import template_vars
from .transaction import Transaction
from .transform import from_dynamo

if TYPE_CHECKING:
    from .table import Table

log = logging.getLogger(__name__)

type Properties = Mapping[str, Any]
type Requery = Callable[[Properties | None, Params], Any]


class Entity:
    """One model bound to a table.

    The high-level methods (``create``, ``get``, ``find``, ``scan``, ``update``, ``remove``)
    enforce the schema, stamp the type field and timestamps, and fall back to a query when
    a key operation targets a secondary index or lacks its sort key. The ``*_item``
    methods are the low-level equivalents and never fall back.
    """

    def __init__(self, table: Table, definition: ModelDefinition) -> None:
        self.table = table
        self.definition = definition

    def __repr__(self) -> str:
        return f"Entity({self.definition.name!r})"

    @property
    def name(self) -> str:
        return self.definition.name

    # High-level API

    def create(self, properties: Properties, params: Params | Mapping[str, Any] | None = None, **options: Any) -> Any:
        params = Params.of(params, **options).with_defaults(parse=True, high=True, exists=False)
        if self.definition.unique_fields:
            return self._create_unique(properties, params)
        return self.put_item(properties, params)

    def get(self, properties: Properties | None = None, params: Params | Mapping[str, Any] | None = None, **options: Any) -> Any:
        params = Params.of(params, **options).with_defaults(parse=True, high=True)
        props = self._builtins(Op.GET, properties)
        prepared = self._walk(Op.GET, props, params)
        if prepared.fallback:
            found = self.find(properties, params)
            if params.execute is False:
                return found
            return self._one(list(found), params)
        return self._execute(Op.GET, prepared, params)

    def find(self, properties: Properties | None = None, params: Params | Mapping[str, Any] | None = None, **options: Any) -> Any:
        params = Params.of(params, **options).with_defaults(parse=True, high=True)
        return self.query_items(properties, params)

    def scan(self, properties: Properties | None = None, params: Params | Mapping[str, Any] | None = None, **options: Any) -> Any:
        params = Params.of(params, **options).with_defaults(parse=True, high=True)
        props = dict(properties or {})
        if not self.definition.generic:
            props[self.definition.type_field] = self.name
        return self.scan_items(props, params)

    def update(self, properties: Properties, params: Params | Mapping[str, Any] | None = None, **options: Any) -> Any:
        params = Params.of(params, **options).with_defaults(exists=True, parse=True, high=True)
        return self.update_item(properties, params)

    def upsert(self, properties: Properties, params: Params | Mapping[str, Any] | None = None, **options: Any) -> Any:
        params = Params.of(params, **options)
        if not params.exists_given:
            params = params.but(exists=None)
        return self.update(properties, params)

    def remove(self, properties: Properties, params: Params | Mapping[str, Any] | None = None, **options: Any) -> Any:
        params = Params.of(params, **options).with_defaults(exists=None, parse=True, high=True)
        props = self._builtins(Op.DELETE, properties)
        prepared = self._walk(Op.DELETE, props, params)
        if prepared.fallback:
            return self.remove_by_find(properties, params)
        if self.definition.unique_fields:
            return self._remove_unique(properties, prepared, params)
        return self._execute(Op.DELETE, prepared, params.with_defaults(return_values="ALL_OLD"))

    def remove_by_find(self, properties: Properties, params: Params | Mapping[str, Any] | None = None, **options: Any) -> Any:
        """Find the items matching ``properties`` and remove each through the primary index."""
        params = Params.of(params, **options)
        if params.retry:
            raise ArgumentError("Remove cannot retry", context={"model": self.name, "properties": dict(properties)})

        found = self.find(properties, params.but(hidden=True, parse=True, high=True))
        if params.execute is False:
            return found
        items = list(found)
        if len(items) > 1 and not params.many:
            raise ArgumentError(
                f'Removing multiple items from "{self.name}". Use many=True to enable.',
                context={"model": self.name, "count": len(items)},
            )

        removed = []
        for item in items:
            removed.append(self.remove(item, params.but(index=None, retry=True, hidden=params.hidden)))
        return removed if params.many else (removed[0] if removed else None)

    def init(self, properties: Properties | None = None, params: Params | Mapping[str, Any] | None = None, **options: Any) -> dict[str, Any]:
        """Return a property bag with defaults and value templates applied. No request is made."""
        params = Params.of(params, **options)
        props = self._builtins(Op.PUT, properties)
        return init_properties(self.definition, props, params, self.table.walk_settings())

    def check(self, properties: Properties, params: Params | Mapping[str, Any] | None = None, **options: Any) -> dict[str, Any]:
        """Add a ConditionCheck for the item to ``params.transaction``."""
        params = Params.of(params, **options).with_defaults(high=True)
        if params.transaction is None:
            raise ArgumentError("check requires a transaction", context={"model": self.name})
        prepared = self._walk(Op.DELETE, self._builtins(Op.DELETE, properties), params)
        if prepared.fallback:
            raise ArgumentError("check requires the full primary key", context={"model": self.name})

        request = self._compile(Op.DELETE, prepared, params)
        if "ConditionExpression" not in request:
            raise ArgumentError("check requires a where or exists condition", context={"model": self.name})
        if params.execute is False:
            return request
        params.transaction.condition_check(request)
        return request

    # Low-level API

    def get_item(self, properties: Properties, params: Params | Mapping[str, Any] | None = None, **options: Any) -> Any:
        params = Params.of(params, **options)
        prepared = self._walk(Op.GET, self._builtins(Op.GET, properties), params)
        return self._execute(Op.GET, prepared, params)

    def put_item(self, properties: Properties, params: Params | Mapping[str, Any] | None = None, **options: Any) -> Any:
        params = Params.of(params, **options)
        prepared = self._walk(Op.PUT, self._builtins(Op.PUT, properties), params)
        return self._execute(Op.PUT, prepared, params)

    def update_item(self, properties: Properties, params: Params | Mapping[str, Any] | None = None, **options: Any) -> Any:
        params = Params.of(params, **options)
        prepared = self._walk(Op.UPDATE, self._builtins(Op.UPDATE, properties), params)
        if prepared.fallback:
            return self._update_by_find(properties, params)
        return self._execute(Op.UPDATE, prepared, params)

    def delete_item(self, properties: Properties, params: Params | Mapping[str, Any] | None = None, **options: Any) -> Any:
        params = Params.of(params, **options)
        prepared = self._walk(Op.DELETE, self._builtins(Op.DELETE, properties), params)
        return self._execute(Op.DELETE, prepared, params)

    def query_items(self, properties: Properties | None = None, params: Params | Mapping[str, Any] | None = None, **options: Any) -> Any:
        params = Params.of(params, **options)
        prepared = self._walk(Op.FIND, self._builtins(Op.FIND, properties), params)
        return self._execute(Op.FIND, prepared, params, properties=properties, again=self.query_items)

    def scan_items(self, properties: Properties | None = None, params: Params | Mapping[str, Any] | None = None, **options: Any) -> Any:
        params = Params.of(params, **options)
        prepared = self._walk(Op.SCAN, dict(properties or {}), params)
        return self._execute(Op.SCAN, prepared, params, properties=properties, again=self.scan_items)

    def fetch(self, models: list[str], properties: Properties | None = None, params: Params | Mapping[str, Any] | None = None, **options: Any) -> dict[str, list[dict[str, Any]]]:
        """Query one item collection for several model types and group the result by type."""
        params = Params.of(params, **options)
        if not models:
            raise ArgumentError("fetch requires at least one model name")
        type_field = self.definition.type_field
        where = " OR ".join(f'${{{type_field}}} = {{"{name}"}}' for name in models)
        page = self.query_items(properties, params.but(where=where, parse=True))
        if params.execute is False:
            return page
        return self.table.group_by_type(list(page))

    # Internals

    def _builtins(self, op: Op, properties: Properties | None) -> dict[str, Any]:
        props = dict(properties or {})
        definition = self.definition
        if definition.generic:
            return props

        if op in (Op.PUT, Op.UPDATE, Op.FIND):
            props[definition.type_field] = definition.name

        timestamps = definition.timestamps
        if timestamps:
            now = self.table.now()
            if op is Op.PUT and timestamps in (True, "create"):
                props[definition.created_field] = now
            if op in (Op.PUT, Op.UPDATE) and timestamps in (True, "update"):
                props[definition.updated_field] = now
        return props

    def _walk(self, op: Op, properties: Properties, params: Params) -> Prepared:
        prepared = prepare_properties(self.definition, op, properties, params, self.table.walk_settings())
        intercept = self.table.intercept
        if intercept is None or op.is_read or prepared.fallback:
            return prepared
        intercepted = intercept(self.name, op.value, dict(prepared.properties), params, None)
        if intercepted is None:
            return prepared
        return replace(prepared, properties=dict(intercepted))

    def _compile(self, op: Op, prepared: Prepared, params: Params) -> dict[str, Any]:
        expression = Expression(
            self.definition,
            op,
            prepared,
            params,
            table_name=self.table.name,
            index=select_index(self.definition, params),
            pre_format=self.table.pre_format,
            capacity=self.table.metrics is not None,
        )
        return expression.command()

    def _execute(
        self,
        op: Op,
        prepared: Prepared,
        params: Params,
        *,
        properties: Properties | None = None,
        again: Requery | None = None,
    ) -> Any:
        request = self._compile(op, prepared, params)
        if params.execute is False:
            return request

        if params.transaction is not None:
            if params.batch is not None:
                raise ArgumentError("Cannot have batched transactions", context={"model": self.name})
            params.transaction.add(op, request)
            return None
        if params.batch is not None:
            params.batch.add(op, request)
            return None

        index = select_index(self.definition, params)
        if op in (Op.FIND, Op.SCAN):
            return self._paginate(op, request, params, index, properties, again)

        response = self.table.call(op, request, model=self.name, index=index.name, params=params)
        match op:
            case Op.PUT:
                raw = request.get("Item")
            case Op.GET:
                raw = response.get("Item")
            case Op.UPDATE | Op.DELETE:
                raw = response.get("Attributes")
            case Op.FIND | Op.SCAN:
                raw = None
        if not raw:
            return None
        return self._parse(op, raw, params, index)

    def _paginate(
        self,
        op: Op,
        request: dict[str, Any],
        params: Params,
        index: Index,
        properties: Properties | None,
        again: Requery | None,
    ) -> Page[dict[str, Any]]:
        run = run_pages(
            lambda req: self.table.call(op, req, model=self.name, index=index.name, params=params),
            request,
            limit=params.limit,
            max_pages=params.page_cap,
        )

        items: list[dict[str, Any]] = []
        for raw in run.items:
            item = self._parse(op, raw, params, index)
            if item is not None:
                items.append(item)

        follow = params.follow if params.follow is not None else index.follow
        if follow and params.parse and not index.is_primary:
            get_params = Params(
                parse=True,
                high=True,
                hidden=params.hidden,
                consistent=params.consistent,
                context=params.context,
                log=params.log,
            )
            items = follow_items(items, lambda item: self.get(item, get_params))

        start = {k: from_dynamo(v) for k, v in unmarshall(run.last_key).items()} if run.last_key else None
        fetch = None
        if start is not None and again is not None:
            next_params = params.but(next=start, prev=None, cursor=None)
            fetch = lambda: again(properties, next_params)  # noqa: E731
        return Page(
            items=items,
            start=start,
            next_cursor=encode_cursor(run.last_key, index=None if index.is_primary else index.name) or None,
            count=run.count,
            fetch=fetch,
        )

    def _entity_for(self, raw: Mapping[str, Any], params: Params, index: Index) -> Entity | None:
        type_attr = raw.get(self.definition.type_field)
        type_name = type_attr.get("S") if isinstance(type_attr, Mapping) else None
        if not type_name or type_name == self.name:
            return self
        if params.high and index.is_primary and not self.definition.generic:
            return None
        other = self.table.entity_for(type_name)
        if other is self.table.unique_entity:
            return None
        return other or self

    def _parse(self, op: Op, raw: Mapping[str, Any], params: Params, index: Index) -> dict[str, Any] | None:
        if not params.parse:
            return {k: from_dynamo(v) for k, v in unmarshall(raw).items()}

        entity = self._entity_for(raw, params, index)
        if entity is None:
            return None
        include_hidden = bool(params.hidden) or bool(params.follow if params.follow is not None else index.follow)
        item = parse_item(entity.definition, self.table.pipeline, raw, include_hidden=include_hidden)
        if self.table.intercept is not None:
            intercepted = self.table.intercept(entity.name, op.value, item, params, raw)
            if intercepted is not None:
                item = intercepted
        if params.transform is not None:
            item = params.transform(entity.name, "read", item, params)
        return item

    def _one(self, items: list[Any], params: Params) -> Any:
        if not items:
            return None
        if params.many:
            return items
        if len(items) > 1:
            raise ArgumentError(
                f'Fallback for "{self.name}" matched {len(items)} items. Use many=True to enable.',
                context={"model": self.name, "count": len(items)},
            )
        return items[0]

    def _key_properties(self, properties: Properties, index: Index) -> dict[str, Any]:
        names: set[str] = set()
        for att in (index.hash, index.sort):
            if not att:
                continue
            fld = self.definition.graph.by_attribute(att)
            if fld is None:
                names.add(att)
                continue
            names.add(fld.name)
            if isinstance(fld.value, str):
                names.update(var.split(".")[0] for var in template_vars(fld.value))
        return {k: v for k, v in properties.items() if k in names}

    def _update_by_find(self, properties: Properties, params: Params) -> Any:
        index = select_index(self.definition, params)
        found = self.find(
            self._key_properties(properties, index),
            Params(index=params.index, hidden=True, parse=True, high=True, context=params.context, execute=params.execute),
        )
        if params.execute is False:
            return found

        primary = self.definition.primary
        hash_name = self.definition.hash_field_for(primary)
        sort_name = self.definition.sort_field_for(primary)
        items = list(found)
        if len(items) > 1 and not params.many:
            raise ArgumentError(
                f'Fallback for "{self.name}" matched {len(items)} items. Use many=True to enable.',
                context={"model": self.name, "count": len(items)},
            )

        updated = []
        for item in items:
            keys = {name: item.get(name) for name in (hash_name, sort_name) if name}
            updated.append(self.update_item({**properties, **keys}, params.but(index=None)))
        return self._one(updated, params)

    def _unique_key(self, fld: Field, value: Any) -> dict[str, Any]:
        d = self.table.delimiter
        primary = self.table.unique_entity.definition.primary
        key = {primary.hash: f"_unique{d}{self.name}{d}{fld.attribute[0]}{d}{value}"}
        if primary.sort:
            key[primary.sort] = f"_unique{d}"
        return key

    def _create_unique(self, properties: Properties, params: Params) -> Any:
        if params.batch is not None:
            raise ArgumentError(
                "Cannot use batch with unique properties which require transactions", context={"model": self.name}
            )
        prepared = self._walk(Op.PUT, self._builtins(Op.PUT, properties), params)
        if params.execute is False:
            return self._compile(Op.PUT, prepared, params)

        transaction = params.transaction if params.transaction is not None else Transaction()
        request = self._compile(Op.PUT, prepared, params.but(transaction=transaction))
        unique_fields = self.definition.unique_fields
        unique = self.table.unique_entity
        for fld in unique_fields:
            value = prepared.properties.get(fld.name)
            if value is None:
                continue
            sentinel = {**self._unique_key(fld, value), unique.definition.type_field: unique.name}
            unique.put_item(sentinel, Params(transaction=transaction, exists=False))
        transaction.add(Op.PUT, request)

        if params.transaction is not None:
            return None
        try:
            self.table.transact("write", transaction, params)
        except ConditionFailedError as err:
            raise UniqueConflictError(
                model=self.name,
                fields=tuple(f.name for f in unique_fields),
                context={"reason_codes": err.context.get("reason_codes", ())},
            ) from err
        return self._parse(Op.PUT, request["Item"], params, self.definition.primary)

    def _remove_unique(self, properties: Properties, prepared: Prepared, params: Params) -> Any:
        if params.batch is not None:
            raise ArgumentError(
                "Cannot use batch with unique properties which require transactions", context={"model": self.name}
            )
        if params.execute is False:
            return self._compile(Op.DELETE, prepared, params)

        item = self.get(
            properties,
            Params(hidden=True, parse=True, high=True, consistent=True, context=params.context, log=params.log),
        )
        if item is None:
            return None

        transaction = params.transaction if params.transaction is not None else Transaction()
        unique = self.table.unique_entity
        pipeline = self.table.pipeline
        for fld in self.definition.unique_fields:
            value = item.get(fld.name)
            if value is None:
                continue
            written = pipeline.write_attribute(Op.PUT, fld, value)
            unique.delete_item(self._unique_key(fld, written), Params(transaction=transaction))
        self._execute(Op.DELETE, prepared, params.but(transaction=transaction))

        if params.transaction is not None:
            return None
        self.table.transact("write", transaction, params)
        if params.hidden:
            return item
        return {k: v for k, v in item.items() if not self._is_hidden(k)}

    def _is_hidden(self, name: str) -> bool:
        fld = self.definition.graph.fields.get(name)
        return fld is not None and fld.hidden
