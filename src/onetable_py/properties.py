from __future__ import annotations

import logging
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .errors import ArgumentError, ValidationError
from .ids import IdGenerator, make_generator
from .model import FieldGraph, Index, ModelDefinition
from .params import Params
from .query import Op
from .template import UNRESOLVED, evaluate
from .transform import TransformPipeline, remove_empty
from .validation import validate_properties

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class WalkSettings:
    delimiter: str
    pipeline: TransformPipeline
    generate: IdGenerator
    context: Mapping[str, Any] = field(default_factory=dict)
    rand_bytes: Callable[[int], bytes] = os.urandom


@dataclass(frozen=True)
class Prepared:
    """Result of walking the field graph for one operation.

    ``properties`` holds write-transformed values keyed by property name.
    ``supplied`` names the properties that came from the caller (or context).
    ``removals`` lists attribute paths explicitly set to ``None`` on update.
    """

    properties: dict[str, Any]
    supplied: frozenset[str] = frozenset()
    removals: tuple[str, ...] = ()
    fallback: bool = False


def select_index(definition: ModelDefinition, params: Params) -> Index:
    name = params.index
    if not name or name == "primary":
        return definition.primary
    index = definition.indexes.get(name)
    if index is None:
        raise ArgumentError(f"Cannot find index {name}", context={"index": name, "model": definition.name})
    return index


def prepare_properties(
    definition: ModelDefinition,
    op: Op,
    properties: Mapping[str, Any],
    params: Params,
    settings: WalkSettings,
) -> Prepared:
    index = select_index(definition, params)
    if not index.is_primary and op not in (Op.FIND, Op.SCAN):
        if not params.high:
            raise ArgumentError(
                f'Cannot use non-primary index "{index.name}" for a "{op.value}" operation',
                context={"index": index.name, "op": op.value},
            )
        return Prepared(properties=dict(properties), fallback=True)

    walker = _Walker(definition, op, params, settings, index)
    rec = walker.walk(definition.graph, dict(properties), dict(params.context or settings.context), top=True)
    if rec is None:
        return Prepared(properties=dict(properties), fallback=True)

    if walker.details:
        log.info("validation error for model %r: %s", definition.name, walker.details)
        raise ValidationError(
            f'Validation Error in "{definition.name}" for "{", ".join(walker.details)}"',
            details=walker.details,
            context={"model": definition.name, "op": op.value},
        )

    if op is not Op.SCAN:
        hash_name = definition.hash_field_for(index)
        if hash_name is None or rec.get(hash_name) is None:
            raise ArgumentError(
                "Empty hash key. Check hash key and any value template variable references.",
                context={"model": definition.name, "op": op.value, "properties": dict(properties)},
            )

    if params.transform is not None:
        rec = params.transform(definition.name, "write", rec, params)

    return Prepared(
        properties=rec,
        supplied=frozenset(walker.supplied),
        removals=tuple(walker.removals),
    )


class _Walker:
    def __init__(
        self,
        definition: ModelDefinition,
        op: Op,
        params: Params,
        settings: WalkSettings,
        index: Index,
    ) -> None:
        self.definition = definition
        self.op = op
        self.params = params
        self.settings = settings
        self.index = index
        self.supplied: set[str] = set()
        self.removals: list[str] = []
        self.details: dict[str, str] = {}

    def walk(
        self,
        graph: FieldGraph,
        props: dict[str, Any],
        context: Mapping[str, Any],
        *,
        top: bool,
        prefix: str = "",
    ) -> dict[str, Any] | None:
        op = self.op
        if top:
            self._tunnel(props)
            self.supplied.update(props)
        self._add_context(graph, props, context, top=top)
        if op is Op.PUT:
            self._set_defaults(graph, props)
        self._run_templates(graph, props, context, top=top)
        self._convert_nulls(graph, props, top=top)

        if op in (Op.PUT, Op.UPDATE):
            self.details.update(
                validate_properties(graph, props, check_required=op is Op.PUT, prefix=prefix)
            )

        if not op.keys_only:
            for fld in graph.ordered():
                nested = fld.graph
                value = props.get(fld.name)
                if nested is None or value is None:
                    continue
                sub_context = context.get(fld.name) if isinstance(context.get(fld.name), Mapping) else {}
                if isinstance(value, Mapping):
                    props[fld.name] = self.walk(
                        nested, dict(value), sub_context, top=False, prefix=f"{prefix}{fld.name}."
                    )
                elif isinstance(value, list):
                    props[fld.name] = [
                        self.walk(nested, dict(v), sub_context, top=False, prefix=f"{prefix}{fld.name}.")
                        if isinstance(v, Mapping)
                        else v
                        for v in value
                    ]

        if not top:
            return props
        return self._select(graph, props)

    def _tunnel(self, props: dict[str, Any]) -> None:
        for kind, settings in (self.params.tunnel or {}).items():
            for key, value in settings.items():
                props[key] = {kind: value}

    def _add_context(
        self, graph: FieldGraph, props: dict[str, Any], context: Mapping[str, Any], *, top: bool
    ) -> None:
        keys = (self.index.hash, self.index.sort)
        for fld in graph.ordered():
            if fld.name in props:
                continue
            if top and self.op is not Op.PUT and fld.attribute[0] in keys:
                continue
            value = context.get(fld.name)
            if value is not None:
                props[fld.name] = value
                if top:
                    self.supplied.add(fld.name)

    def _set_defaults(self, graph: FieldGraph, props: dict[str, Any]) -> None:
        for fld in graph.ordered():
            if fld.name in props or fld.value is not None:
                continue
            value: Any = None
            if fld.default is not None:
                value = fld.default() if callable(fld.default) else fld.default
            elif fld.generate:
                generator = (
                    self.settings.generate
                    if fld.generate is True
                    else make_generator(fld.generate, rand_bytes=self.settings.rand_bytes)
                )
                value = generator()
            if value is not None:
                props[fld.name] = value

    def _run_templates(
        self, graph: FieldGraph, props: dict[str, Any], context: Mapping[str, Any], *, top: bool
    ) -> None:
        index = self.index
        for fld in graph.ordered():
            if (
                top
                and fld.is_indexed
                and self.op not in (Op.PUT, Op.UPDATE)
                and fld.attribute[0] not in (index.hash, index.sort)
            ):
                continue

            current = props.get(fld.name)
            if callable(current):
                props[fld.name] = current(fld.pathname, props)
                continue
            if fld.name in props or fld.value is None:
                continue

            begins = None
            if top and fld.attribute[0] == index.sort and self.op is Op.FIND and not self.params.where:
                begins = self.settings.delimiter
            value = evaluate(
                fld.pathname,
                fld.value,
                props,
                context,
                format_value=self._format_template_value,
                begins_delimiter=begins,
            )
            if value is not UNRESOLVED and value is not None:
                props[fld.name] = value

    def _format_template_value(self, value: Any) -> Any:
        if isinstance(value, datetime):
            return self.settings.pipeline.write_date(value)
        return value

    def _convert_nulls(self, graph: FieldGraph, props: dict[str, Any], *, top: bool) -> None:
        for name, value in list(props.items()):
            fld = graph.fields.get(name)
            if fld is None:
                continue
            if value is None:
                if not fld.nulls:
                    if top:
                        self.removals.append(fld.pathname)
                    del props[name]
            elif fld.kind in ("object", "array") and isinstance(value, (Mapping, list)):
                props[name] = remove_empty(value, nulls=fld.nulls)

    def _select(self, graph: FieldGraph, props: dict[str, Any]) -> dict[str, Any] | None:
        op, index, params = self.op, self.index, self.params
        pipeline = self.settings.pipeline
        rec: dict[str, Any] = {}

        for fld in graph.ordered():
            attribute = fld.attribute[0]
            value = props.get(fld.name)
            if value is None and attribute == index.sort and params.high and op in (Op.GET, Op.DELETE, Op.UPDATE):
                return None
            if op.keys_only and attribute not in (index.hash, index.sort):
                continue
            if not index.projects(attribute):
                continue
            if fld.name not in props:
                continue
            if value is None:
                rec[fld.name] = None
                continue
            written = pipeline.write_attribute(op, fld, value)
            if written is not None:
                rec[fld.name] = written

        if self.definition.generic:
            keys = (index.hash, index.sort)
            for name, value in props.items():
                if name in rec or (op.keys_only and name not in keys):
                    continue
                if not index.projects(name):
                    continue
                rec[name] = value
        return rec


def init_properties(
    definition: ModelDefinition,
    properties: Mapping[str, Any],
    params: Params,
    settings: WalkSettings,
) -> dict[str, Any]:
    """Apply context, defaults and value templates as a create would, without validating or writing.

    Every declared field appears in the result, ``None`` where nothing supplied a value.
    """
    walker = _Walker(definition, Op.PUT, params, settings, definition.primary)
    graph = definition.graph
    props = dict(properties)
    context = dict(params.context or settings.context)
    walker._add_context(graph, props, context, top=True)
    walker._set_defaults(graph, props)
    walker._run_templates(graph, props, context, top=True)
    return {fld.name: props.get(fld.name) for fld in graph.ordered()}
