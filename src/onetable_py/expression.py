from __future__ import annotations

import logging
import re
from collections.abc import Callable, Mapping
from typing import Any

from boto3.dynamodb.types import TypeSerializer

from .errors import ArgumentError
from .model import Field, FieldGraph, Index, ModelDefinition
from .params import Params
from .properties import Prepared
from .query import Op, decode_cursor
from .transform import to_dynamo

log = logging.getLogger(__name__)

KEY_OPERATORS = frozenset({"<", "<=", "=", ">=", ">", "begins", "begins_with", "between"})
FILTER_OPERATORS = KEY_OPERATORS | {"<>"}

_NAME_TOKEN_RE = re.compile(r"\$\{(.*?)\}")
_SUBSTITUTION_RE = re.compile(r"@\{(.*?)\}")
_LITERAL_RE = re.compile(r"\{(.*?)\}", re.DOTALL)
_NUMBER_RE = re.compile(r"^[-+]?([0-9]+(\.[0-9]*)?|\.[0-9]+)$")
_QUOTED_RE = re.compile(r'^"(.*)"$', re.DOTALL)
_EXPRESSION_RE = re.compile(r"\$\{.*?\}|@\{.*?\}|\{.*?\}")
_SUBSCRIPT_RE = re.compile(r"\[[^\]]+\]+")

_serializer = TypeSerializer()

type FormatHook = Callable[[str, dict[str, Any]], dict[str, Any] | None]


def _literal(text: str) -> Any:
    if _NUMBER_RE.match(text):
        return float(text) if "." in text else int(text)
    quoted = _QUOTED_RE.match(text)
    if quoted:
        return quoted.group(1)
    if text in ("true", "false"):
        return text == "true"
    return text


def _is_operator(fld: Field | None, value: Any) -> bool:
    if not isinstance(value, Mapping) or not value:
        return False
    if fld is None:
        return all(action in FILTER_OPERATORS for action in value)
    return fld.kind != "object"


def _and(terms: list[str]) -> str:
    if len(terms) == 1:
        return terms[0]
    return " AND ".join(f"({t})" for t in terms)


class Expression:
    """Compiles one operation into a DynamoDB request.

    An Expression is built from its model, operation, prepared properties and params,
    and is compiled exactly once by :meth:`command`. Names and values get fresh
    ``#_n`` / ``:_n`` placeholders on every reference.
    """

    def __init__(
        self,
        definition: ModelDefinition,
        op: Op,
        prepared: Prepared,
        params: Params,
        *,
        table_name: str,
        index: Index,
        pre_format: FormatHook | None = None,
        capacity: bool = False,
    ) -> None:
        self.definition = definition
        self.op = op
        self.prepared = prepared
        self.params = params
        self.table_name = table_name
        self.index = index
        self.pre_format = pre_format
        self.capacity = capacity

        self.names: dict[str, str] = {}
        self.values: dict[str, Any] = {}
        self.key: dict[str, Any] = {}
        self.item: dict[str, Any] = {}
        self.key_conditions: list[str] = []
        self.filters: list[str] = []
        self.conditions: list[str] = []
        self.project: list[str] = []
        self.updates: dict[str, list[str]] = {"add": [], "delete": [], "remove": [], "set": []}

        self._name_index = 0
        self._value_index = 0
        self._claimed: set[str] = set()
        self._mapped: dict[str, dict[str, Any]] = {}
        self._compiled = False

        self._prepare()

    # Placeholders

    def add_name(self, name: str) -> str:
        token = f"#_{self._name_index}"
        self._name_index += 1
        self.names[token] = name
        return token

    def add_value(self, value: Any) -> str:
        token = f":_{self._value_index}"
        self._value_index += 1
        self.values[token] = value
        return token

    # Classification

    def _prepare(self) -> None:
        op, params = self.op, self.params
        graph = self.definition.graph

        match op:
            case Op.FIND | Op.SCAN:
                if params.where:
                    self.filters.append(self.expand(params.where))
            case Op.PUT | Op.UPDATE | Op.DELETE:
                self._add_conditions()
            case Op.GET:
                pass

        for name, value in self.prepared.properties.items():
            if name in self._claimed:
                continue
            fld = graph.fields.get(name)
            if fld is None and not self.definition.generic:
                continue
            self._add(name, fld, value)

        if self._mapped:
            self._add_mapped()

        for name in params.fields or ():
            fld = graph.fields.get(name)
            if fld is not None:
                self.project.append(self.add_name(fld.attribute[0]))
            elif self.definition.generic:
                self.project.append(self.add_name(name))

    def _add(self, name: str, fld: Field | None, value: Any) -> None:
        op = self.op
        attribute = fld.attribute if fld is not None else (name,)
        att = attribute[0]

        if len(attribute) > 1:
            match op:
                case Op.PUT | Op.UPDATE:
                    self._mapped.setdefault(att, {})[attribute[1]] = value
                case Op.FIND | Op.SCAN:
                    if self._is_filter(name, fld):
                        self._add_filter(f"{self.add_name(att)}.{self.add_name(attribute[1])}", fld, value)
                case Op.GET | Op.DELETE:
                    pass
            return

        if att in (self.index.hash, self.index.sort):
            match op:
                case Op.FIND:
                    self._add_key_condition(att, fld, value)
                case Op.SCAN:
                    if self._is_filter(name, fld):
                        self._add_filter(self.add_name(att), fld, value)
                case Op.GET | Op.DELETE | Op.UPDATE:
                    self.key[att] = value
                case Op.PUT:
                    self.item[att] = value
            return

        match op:
            case Op.FIND | Op.SCAN:
                if self._is_filter(name, fld):
                    self._add_filter(self.add_name(att), fld, value)
            case Op.PUT:
                self.item[att] = value
            case Op.UPDATE:
                if self._is_updatable(name, fld):
                    self.updates["set"].append(f"{self.add_name(att)} = {self.add_value(value)}")
            case Op.GET | Op.DELETE:
                pass

    def _is_filter(self, name: str, fld: Field | None) -> bool:
        if self.params.batch is not None:
            return False
        if fld is not None and not fld.filter:
            return False
        return name in self.prepared.supplied

    def _is_updatable(self, name: str, fld: Field | None) -> bool:
        params = self.params
        if name == self.definition.type_field and params.exists not in (None, False):
            return False
        if params.remove and name in params.remove:
            return False
        if fld is not None and fld.is_indexed and params.update_indexes is not True and params.exists is not None:
            return False
        return True

    def _add_mapped(self) -> None:
        mappings = self.definition.graph.mappings
        for att, props in self._mapped.items():
            if len(props) != len(mappings.get(att, ())):
                raise ArgumentError(
                    f'Missing properties for mapped data field "{att}" in model "{self.definition.name}"',
                    context={"attribute": att, "properties": sorted(props)},
                )
        for att, props in self._mapped.items():
            if self.op is Op.PUT:
                self.item[att] = props
            else:
                self.updates["set"].append(f"{self.add_name(att)} = {self.add_value(props)}")

    def _operator_term(self, target: str, fld: Field | None, action: str, operand: Any, *, allowed: frozenset[str]) -> str:
        if action not in allowed:
            kind = "KeyCondition" if allowed is KEY_OPERATORS else "filter"
            raise ArgumentError(
                f'Invalid {kind} operator "{action}"',
                context={"field": fld.name if fld is not None else target, "operator": action, "value": operand},
            )
        match action:
            case "begins" | "begins_with":
                return f"begins_with({target}, {self.add_value(operand)})"
            case "between":
                if not isinstance(operand, (list, tuple)) or len(operand) != 2:
                    raise ArgumentError(
                        "between requires two values",
                        context={"field": fld.name if fld is not None else target, "operator": action, "value": operand},
                    )
                low = self.add_value(operand[0])
                high = self.add_value(operand[1])
                return f"{target} BETWEEN {low} AND {high}"
            case _:
                return f"{target} {action} {self.add_value(operand)}"

    def _add_key_condition(self, att: str, fld: Field | None, value: Any) -> None:
        target = self.add_name(att)
        if att == self.index.sort and _is_operator(fld, value):
            for action, operand in value.items():
                self.key_conditions.append(self._operator_term(target, fld, action, operand, allowed=KEY_OPERATORS))
            return
        self.key_conditions.append(f"{target} = {self.add_value(value)}")

    def _add_filter(self, target: str, fld: Field | None, value: Any) -> None:
        if _is_operator(fld, value):
            for action, operand in value.items():
                self.filters.append(self._operator_term(target, fld, action, operand, allowed=FILTER_OPERATORS))
            return
        self.filters.append(f"{target} = {self.add_value(value)}")

    # Conditions and update params

    def _add_conditions(self) -> None:
        params, index = self.params, self.index
        if params.exists is True:
            self.conditions.append(f"attribute_exists({self.add_name(index.hash)})")
            if index.sort:
                self.conditions.append(f"attribute_exists({self.add_name(index.sort)})")
        elif params.exists is False:
            self.conditions.append(f"attribute_not_exists({self.add_name(index.hash)})")
            if index.sort:
                self.conditions.append(f"attribute_not_exists({self.add_name(index.sort)})")

        if params.type and index.sort:
            self.conditions.append(f"attribute_type({self.add_name(index.sort)}, {self.add_value(params.type)})")

        if self.op is Op.UPDATE:
            self._add_updates()

        if params.where and self.op in (Op.DELETE, Op.UPDATE):
            self.conditions.append(self.expand(params.where))

    def _check_not_key(self, path: str, action: str) -> None:
        name = path.split(".")[0].split("[")[0]
        keys = (self.index.hash, self.index.sort)
        fld = self.definition.graph.fields.get(name)
        if name in keys or (fld is not None and fld.attribute[0] in keys):
            raise ArgumentError(f"Cannot {action} hash or sort", context={"field": path})

    def _add_updates(self) -> None:
        params, updates = self.params, self.updates
        graph = self.definition.graph

        for path, value in (params.add or {}).items():
            self._check_not_key(path, "add")
            self._claimed.add(path)
            updates["add"].append(f"{self.make_target(graph, path)} {self.add_value(value)}")

        for path, value in (params.delete or {}).items():
            self._check_not_key(path, "delete")
            self._claimed.add(path)
            updates["delete"].append(f"{self.make_target(graph, path)} {self.add_value(value)}")

        for path in params.remove or ():
            self._check_not_key(path, "remove")
            fld = graph.fields.get(path)
            if fld is not None and fld.required:
                raise ArgumentError(f'Cannot remove required field "{path}"', context={"field": path})
            self._claimed.add(path)
            updates["remove"].append(self.make_target(graph, path))

        for pathname in self.prepared.removals:
            if pathname in self._claimed:
                continue
            fld = graph.fields.get(pathname)
            if fld is not None and fld.attribute[0] in (self.index.hash, self.index.sort):
                continue
            self._claimed.add(pathname)
            updates["remove"].append(self.make_target(graph, pathname))

        for path, value in (params.set or {}).items():
            self._check_not_key(path, "set")
            self._claimed.add(path)
            target = self.make_target(graph, path)
            if isinstance(value, str) and _EXPRESSION_RE.search(value):
                updates["set"].append(f"{target} = {self.expand(value)}")
            else:
                updates["set"].append(f"{target} = {self.add_value(value)}")

        for path, value in (params.push or {}).items():
            self._check_not_key(path, "push")
            self._claimed.add(path)
            items = list(value) if isinstance(value, (list, tuple)) else [value]
            target = self.make_target(graph, path)
            existing = self.make_target(graph, path)
            empty = self.add_value([])
            updates["set"].append(
                f"{target} = list_append(if_not_exists({existing}, {empty}), {self.add_value(items)})"
            )

    # Where expansion

    def make_target(self, graph: FieldGraph | None, path: str) -> str:
        """Translate a property path such as ``address.lines[0]`` into placeholder names."""
        target: list[str] = []
        for prop in path.split("."):
            subscript = ""
            found = _SUBSCRIPT_RE.search(prop)
            if found:
                subscript = found.group(0)
                prop = _SUBSCRIPT_RE.sub("", prop, count=1)
            fld = graph.fields.get(prop) if graph is not None else None
            if fld is not None:
                target.append("".join((".".join(self.add_name(a) for a in fld.attribute), subscript)))
                graph = fld.graph
            else:
                target.append(f"{self.add_name(prop)}{subscript}")
                graph = None
        return ".".join(target)

    def expand(self, where: str) -> str:
        """Expand ``${path}``, ``@{name}``, ``@{...list}`` and ``{literal}`` tokens."""
        graph = self.definition.graph
        text = _NAME_TOKEN_RE.sub(lambda m: self.make_target(graph, m.group(1)), str(where))

        def substitute(match: re.Match[str]) -> str:
            token = match.group(1)
            name = token.removeprefix("...")
            substitutions = self.params.substitutions or {}
            if name not in substitutions or substitutions[name] is None:
                raise ArgumentError(
                    f'Missing substitutions for attribute value "{name}"',
                    context={"where": where, "substitutions": dict(substitutions)},
                )
            value = substitutions[name]
            if token != name and isinstance(value, (list, tuple)):
                return ", ".join(self.add_value(v) for v in value)
            return self.add_value(value)

        text = _SUBSTITUTION_RE.sub(substitute, text)
        return _LITERAL_RE.sub(lambda m: self.add_value(_literal(m.group(1))), text)

    # Serialization

    def _marshall(self, values: Mapping[str, Any]) -> dict[str, Any]:
        return {k: _serializer.serialize(to_dynamo(v)) for k, v in values.items()}

    def _start_key(self) -> dict[str, Any] | None:
        params = self.params
        start = params.next if params.next is not None else params.prev
        if start:
            return self._marshall(start)
        if params.cursor:
            return decode_cursor(params.cursor).last_key
        return None

    def command(self) -> dict[str, Any]:
        if self._compiled:
            raise ArgumentError("Expression has already been compiled", context={"op": self.op.value})
        self._compiled = True

        op, params = self.op, self.params
        if params.batch is not None:
            request = self._batch_command()
        else:
            request = self._full_command()

        if self.pre_format is not None:
            request = self.pre_format(self.definition.name, request) or request
        if params.post_format is not None:
            request = params.post_format(self.definition.name, request) or request

        level = logging.INFO if params.log else logging.DEBUG
        log.log(level, "%s %s request: %s", self.definition.name, op.value, request)
        return request

    def _batch_command(self) -> dict[str, Any]:
        if self.filters:
            raise ArgumentError("Invalid filters with batch operation", context={"op": self.op.value})
        request: dict[str, Any] = {"TableName": self.table_name}
        match self.op:
            case Op.GET | Op.DELETE:
                request["Key"] = self._marshall(self.key)
                if self.project:
                    request["ProjectionExpression"] = ", ".join(self.project)
                    request["ExpressionAttributeNames"] = dict(self.names)
            case Op.PUT:
                request["Item"] = self._marshall(self.item)
            case Op.FIND | Op.SCAN | Op.UPDATE:
                raise ArgumentError(f'Unsupported batch operation "{self.op.value}"', context={"op": self.op.value})
        return request

    def _full_command(self) -> dict[str, Any]:
        op, params, index = self.op, self.params, self.index
        transactional = params.transaction is not None

        if params.select:
            if self.project and params.select != "SPECIFIC_ATTRIBUTES":
                raise ArgumentError("Select must be SPECIFIC_ATTRIBUTES with projection expressions")
            select: str | None = params.select
        elif params.count:
            if self.project:
                raise ArgumentError("Cannot use select and count together")
            select = "COUNT"
        else:
            select = None

        update_expression = " ".join(
            f"{action.upper()} {', '.join(terms)}" for action, terms in self.updates.items() if terms
        )

        request: dict[str, Any] = {
            "TableName": self.table_name,
            "ConditionExpression": _and(self.conditions) if self.conditions else None,
            "KeyConditionExpression": " AND ".join(self.key_conditions) or None,
            "FilterExpression": _and(self.filters) if self.filters else None,
            "UpdateExpression": update_expression or None,
            "ProjectionExpression": ", ".join(self.project) or None,
            "ExpressionAttributeNames": dict(self.names),
            "ExpressionAttributeValues": self._marshall(self.values),
            "Select": select,
        }
        if (params.stats or self.capacity) and not transactional:
            request["ReturnConsumedCapacity"] = params.capacity or "TOTAL"

        match op:
            case Op.PUT:
                request["Item"] = self._marshall(self.item)
                if not transactional:
                    request["ReturnValues"] = params.return_values or "NONE"
            case Op.UPDATE:
                request["Key"] = self._marshall(self.key)
                if not transactional:
                    request["ReturnValues"] = params.return_values or "ALL_NEW"
            case Op.DELETE:
                request["Key"] = self._marshall(self.key)
                if params.return_values and not transactional:
                    request["ReturnValues"] = params.return_values
            case Op.GET:
                request["Key"] = self._marshall(self.key)
                if not transactional:
                    request["ConsistentRead"] = bool(params.consistent)
            case Op.FIND | Op.SCAN:
                request["ConsistentRead"] = bool(params.consistent)
                request["IndexName"] = None if index.is_primary else index.name
                request["Limit"] = params.limit or None
                request["ExclusiveStartKey"] = self._start_key()
                if op is Op.FIND:
                    request["ScanIndexForward"] = not (bool(params.reverse) ^ (params.prev is not None))
                else:
                    request["TotalSegments"] = params.segments
                    request["Segment"] = params.segment

        return {k: v for k, v in request.items() if v is not None and v != {} and v != ""}
