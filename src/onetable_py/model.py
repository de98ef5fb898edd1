from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Literal, cast

from .errors import SchemaError
from .template import template_vars

MaxLocalIndexes = 5
MaxGlobalIndexes = 20

VALID_TYPES = frozenset({"array", "binary", "boolean", "buffer", "date", "number", "object", "set", "string"})

_PYTHON_TYPES: dict[Any, str] = {
    str: "string",
    int: "number",
    float: "number",
    Decimal: "number",
    bool: "boolean",
    datetime: "date",
    bytes: "binary",
    set: "set",
    frozenset: "set",
    list: "array",
    dict: "object",
}

_DECLARATION_KEYS = frozenset(
    {
        "type",
        "map",
        "required",
        "default",
        "value",
        "generate",
        "uuid",
        "validate",
        "enum",
        "unique",
        "hidden",
        "nulls",
        "crypt",
        "filter",
        "transform",
        "schema",
        "items",
        "description",
    }
)


@dataclass(frozen=True)
class Scalar:
    kind: str


@dataclass(frozen=True)
class ObjectOf:
    graph: FieldGraph | None = None


@dataclass(frozen=True)
class ArrayOf:
    item: FieldType | None = None


type FieldType = Scalar | ObjectOf | ArrayOf


@dataclass(frozen=True)
class Field:
    name: str
    type: FieldType
    attribute: tuple[str, ...]
    pathname: str = ""
    required: bool = False
    default: Any = None
    value: str | Callable[..., Any] | None = None
    generate: str | bool | Callable[[], Any] | None = None
    validate: Any = None
    enum: tuple[Any, ...] | None = None
    unique: bool = False
    hidden: bool = False
    nulls: bool = False
    crypt: bool = False
    filter: bool = True
    transform: Callable[..., Any] | None = None
    is_indexed: bool = False

    @property
    def kind(self) -> str:
        match self.type:
            case Scalar(kind=kind):
                return kind
            case ObjectOf():
                return "object"
            case ArrayOf():
                return "array"

    @property
    def graph(self) -> FieldGraph | None:
        """Nested graph for object fields and arrays of objects."""
        match self.type:
            case ObjectOf(graph=graph):
                return graph
            case ArrayOf(item=ObjectOf(graph=graph)):
                return graph
            case _:
                return None


@dataclass(frozen=True)
class FieldGraph:
    fields: Mapping[str, Field]
    order: tuple[str, ...]
    mappings: Mapping[str, tuple[str, ...]] = field(default_factory=dict)

    def ordered(self) -> Iterator[Field]:
        for name in self.order:
            yield self.fields[name]

    def by_attribute(self, attribute: str) -> Field | None:
        for fld in self.fields.values():
            if fld.attribute[0] == attribute and len(fld.attribute) == 1:
                return fld
        return None


type Projection = Literal["all", "keys"] | tuple[str, ...]


@dataclass(frozen=True)
class Index:
    name: str
    hash: str
    sort: str | None = None
    type: Literal["primary", "global", "local"] = "global"
    project: Projection = "all"
    follow: bool = False

    @property
    def is_primary(self) -> bool:
        return self.type == "primary"

    def projects(self, attribute: str) -> bool:
        if isinstance(self.project, tuple):
            return attribute in self.project or attribute in (self.hash, self.sort)
        return True


def parse_indexes(raw: Mapping[str, Any]) -> dict[str, Index]:
    primary_raw = raw.get("primary")
    if not isinstance(primary_raw, Mapping) or not primary_raw.get("hash"):
        raise SchemaError("Missing primary index hash", context={"indexes": dict(raw)})

    primary = Index(
        name="primary",
        hash=str(primary_raw["hash"]),
        sort=cast(str | None, primary_raw.get("sort")),
        type="primary",
    )
    out: dict[str, Index] = {"primary": primary}
    local_count = 0
    global_count = 0

    for name, spec in raw.items():
        if name == "primary":
            continue
        if not isinstance(spec, Mapping):
            raise SchemaError(f"Index {name} must be a map", context={"index": name})

        project = _parse_projection(name, spec.get("project", "all"))
        if spec.get("type") == "local":
            local_count += 1
            if spec.get("hash") and spec["hash"] != primary.hash:
                raise SchemaError(f"Local index {name} must share the primary hash", context={"index": name})
            sort = spec.get("sort")
            if not sort:
                raise SchemaError(f"Local index {name} must define a sort attribute", context={"index": name})
            if sort == primary.sort:
                raise SchemaError(
                    f"Local index {name} must use a different sort than the primary index",
                    context={"index": name},
                )
            out[name] = Index(
                name=name,
                hash=primary.hash,
                sort=str(sort),
                type="local",
                project=project,
                follow=bool(spec.get("follow", False)),
            )
            continue

        global_count += 1
        if not spec.get("hash"):
            raise SchemaError(f"Global index {name} must define a hash attribute", context={"index": name})
        out[name] = Index(
            name=name,
            hash=str(spec["hash"]),
            sort=cast(str | None, spec.get("sort")),
            type="global",
            project=project,
            follow=bool(spec.get("follow", False)),
        )

    if local_count > MaxLocalIndexes:
        raise SchemaError(f"Too many local secondary indexes (max {MaxLocalIndexes})")
    if global_count > MaxGlobalIndexes:
        raise SchemaError(f"Too many global secondary indexes (max {MaxGlobalIndexes})")
    return out


def _parse_projection(name: str, project: Any) -> Projection:
    if project in ("all", "keys"):
        return cast(Projection, project)
    if isinstance(project, (list, tuple)) and all(isinstance(p, str) for p in project):
        return tuple(project)
    raise SchemaError(f"Index {name} has an invalid projection: {project!r}", context={"index": name})


def resolve_type(pathname: str, decl: Mapping[str, Any], *, nested: FieldGraph | None) -> FieldType:
    raw = decl.get("type")
    if raw is None:
        raise SchemaError(f"Missing field type for {pathname}", context={"field": pathname})

    kind = _PYTHON_TYPES.get(raw, raw)
    if not isinstance(kind, str) or kind.lower() not in VALID_TYPES:
        raise SchemaError(f"Unknown type {raw!r} for field {pathname}", context={"field": pathname})
    kind = kind.lower()

    if kind == "object":
        return ObjectOf(nested)
    if kind == "array":
        if nested is not None:
            return ArrayOf(ObjectOf(nested))
        items = decl.get("items")
        if isinstance(items, Mapping) and "type" in items:
            return ArrayOf(resolve_type(f"{pathname}[]", items, nested=None))
        return ArrayOf(None)
    if kind == "buffer":
        return Scalar("binary")
    return Scalar(kind)


def order_fields(fields: Mapping[str, Field]) -> tuple[str, ...]:
    """Topologically order fields so templated dependencies are evaluated first.

    Edges run from a field with a string template to each sibling it references
    that itself has a template or a nested schema. Declaration order is kept
    among independent fields.
    """
    edges: dict[str, list[str]] = {}
    for name, fld in fields.items():
        deps: list[str] = []
        if isinstance(fld.value, str):
            for var in template_vars(fld.value):
                ref_name = var.split(".")[0]
                ref = fields.get(ref_name)
                if ref is None or ref_name == name or ref_name in deps:
                    continue
                if ref.value is not None or ref.graph is not None:
                    deps.append(ref_name)
        edges[name] = deps

    order: list[str] = []
    state: dict[str, Literal["visiting", "done"]] = {}

    def visit(name: str, path: tuple[str, ...]) -> None:
        current = state.get(name)
        if current == "done":
            return
        if current == "visiting":
            cycle = " -> ".join((*path[path.index(name) :], name))
            raise SchemaError(f"Cyclic value template dependency: {cycle}", context={"cycle": cycle})
        state[name] = "visiting"
        for dep in edges[name]:
            visit(dep, (*path, name))
        state[name] = "done"
        order.append(name)

    for name in fields:
        visit(name, ())
    return tuple(order)


def build_field_graph(
    declarations: Mapping[str, Mapping[str, Any]],
    *,
    prefix: str = "",
    nulls: bool = False,
    hidden: bool = True,
    index_attributes: Mapping[str, str] | None = None,
    primary: Index | None = None,
) -> FieldGraph:
    fields: dict[str, Field] = {}
    packed: dict[str, list[str]] = {}
    plain: dict[str, str] = {}

    for name, decl in declarations.items():
        pathname = f"{prefix}.{name}" if prefix else name
        if not isinstance(decl, Mapping):
            raise SchemaError(f"Field {pathname} must be a map", context={"field": pathname})
        unknown = set(decl).difference(_DECLARATION_KEYS)
        if unknown:
            raise SchemaError(
                f"Unknown settings for field {pathname}: {sorted(unknown)}", context={"field": pathname}
            )

        attribute = _attribute_for(pathname, name, decl.get("map"), packed=packed, plain=plain)

        nested: FieldGraph | None = None
        schema = decl.get("schema")
        if schema is None and isinstance(decl.get("items"), Mapping):
            schema = decl["items"].get("schema")
        if schema is not None:
            if not isinstance(schema, Mapping):
                raise SchemaError(f"Nested schema for {pathname} must be a map", context={"field": pathname})
            nested = build_field_graph(schema, prefix=pathname, nulls=nulls, hidden=hidden)

        ftype = resolve_type(pathname, decl, nested=nested)

        required = bool(decl.get("required", False))
        is_indexed = False
        if index_attributes is not None and attribute[0] in index_attributes:
            is_indexed = True
            if len(attribute) > 1:
                raise SchemaError(
                    f"Cannot map indexed property {pathname} to a packed attribute", context={"field": pathname}
                )
            if index_attributes[attribute[0]] == "primary":
                required = True

        value = decl.get("value")
        field_hidden = decl.get("hidden")
        if field_hidden is None:
            field_hidden = hidden if value is not None else False

        enum = decl.get("enum")
        generate = decl.get("generate", decl.get("uuid"))
        fields[name] = Field(
            name=name,
            type=ftype,
            attribute=attribute,
            pathname=pathname,
            required=required,
            default=decl.get("default"),
            value=value,
            generate=generate,
            validate=decl.get("validate"),
            enum=tuple(enum) if enum is not None else None,
            unique=bool(decl.get("unique", False)),
            hidden=bool(field_hidden),
            nulls=bool(decl["nulls"]) if decl.get("nulls") is not None else nulls,
            crypt=bool(decl.get("crypt", False)),
            filter=decl.get("filter", True) is not False,
            transform=decl.get("transform"),
            is_indexed=is_indexed,
        )

    if primary is not None:
        hash_field = next((f for f in fields.values() if f.attribute == (primary.hash,)), None)
        sort_field = next((f for f in fields.values() if f.attribute == (primary.sort,)), None)
        if hash_field is None or (primary.sort and sort_field is None):
            raise SchemaError(
                "Cannot find primary keys in model fields",
                context={"hash": primary.hash, "sort": primary.sort},
            )

    return FieldGraph(
        fields=fields,
        order=order_fields(fields),
        mappings={att: tuple(subs) for att, subs in packed.items()},
    )


def _attribute_for(
    pathname: str,
    name: str,
    target: Any,
    *,
    packed: dict[str, list[str]],
    plain: dict[str, str],
) -> tuple[str, ...]:
    if not target:
        attribute: tuple[str, ...] = (name,)
    elif isinstance(target, str):
        attribute = tuple(target.split(".", 1))
    else:
        raise SchemaError(f"Invalid map for field {pathname}: {target!r}", context={"field": pathname})

    att = attribute[0]
    if len(attribute) > 1:
        if att in plain:
            raise SchemaError(
                f"Attribute {att} is already mapped as a literal by {plain[att]}",
                context={"field": pathname, "attribute": att},
            )
        subs = packed.setdefault(att, [])
        if attribute[1] in subs:
            raise SchemaError(
                f"Multiple attributes mapped to the target {att}.{attribute[1]}",
                context={"field": pathname, "attribute": att},
            )
        subs.append(attribute[1])
    else:
        if att in packed or att in plain:
            raise SchemaError(
                f"Multiple attributes mapped to the target {att}", context={"field": pathname, "attribute": att}
            )
        plain[att] = pathname
    return attribute


@dataclass(frozen=True)
class ModelDefinition:
    name: str
    graph: FieldGraph
    indexes: Mapping[str, Index]
    hash: str | None
    sort: str | None
    type_field: str = "_type"
    created_field: str = "created"
    updated_field: str = "updated"
    timestamps: bool | str = False
    generic: bool = False

    @classmethod
    def from_schema(
        cls,
        name: str,
        fields: Mapping[str, Mapping[str, Any]],
        *,
        indexes: Mapping[str, Index],
        type_field: str = "_type",
        created_field: str = "created",
        updated_field: str = "updated",
        timestamps: bool | str = False,
        nulls: bool = False,
        hidden: bool = True,
    ) -> ModelDefinition:
        if not name:
            raise SchemaError("Model name is required")

        declarations = dict(fields)
        if type_field not in declarations:
            declarations[type_field] = {"type": "string", "default": name}
        if timestamps:
            declarations.setdefault(created_field, {"type": "date"})
            declarations.setdefault(updated_field, {"type": "date"})

        index_attributes: dict[str, str] = {}
        for index in reversed(list(indexes.values())):
            for att in (index.hash, index.sort):
                if att:
                    index_attributes[att] = index.name

        primary = indexes["primary"]
        graph = build_field_graph(
            declarations,
            nulls=nulls,
            hidden=hidden,
            index_attributes=index_attributes,
            primary=primary,
        )
        hash_field = next(f for f in graph.fields.values() if f.attribute == (primary.hash,))
        sort_field = next((f for f in graph.fields.values() if primary.sort and f.attribute == (primary.sort,)), None)
        return cls(
            name=name,
            graph=graph,
            indexes=indexes,
            hash=hash_field.name,
            sort=sort_field.name if sort_field is not None else None,
            type_field=type_field,
            created_field=created_field,
            updated_field=updated_field,
            timestamps=timestamps,
        )

    @classmethod
    def generic_model(cls, name: str, *, indexes: Mapping[str, Index], type_field: str = "_type") -> ModelDefinition:
        primary = indexes["primary"]
        return cls(
            name=name,
            graph=FieldGraph(fields={}, order=()),
            indexes=indexes,
            hash=primary.hash,
            sort=primary.sort,
            type_field=type_field,
            generic=True,
        )

    @property
    def primary(self) -> Index:
        return self.indexes["primary"]

    @property
    def unique_fields(self) -> tuple[Field, ...]:
        primary = self.primary
        return tuple(
            f
            for f in self.graph.fields.values()
            if f.unique and f.attribute[0] not in (primary.hash, primary.sort)
        )

    def hash_field_for(self, index: Index) -> str | None:
        """Property name holding the hash attribute of ``index``."""
        if self.generic:
            return index.hash
        fld = self.graph.by_attribute(index.hash)
        return fld.name if fld is not None else None

    def sort_field_for(self, index: Index) -> str | None:
        if index.sort is None:
            return None
        if self.generic:
            return index.sort
        fld = self.graph.by_attribute(index.sort)
        return fld.name if fld is not None else None
