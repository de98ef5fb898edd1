from __future__ import annotations

import json
import re
from importlib.resources import files
from typing import TYPE_CHECKING, Any

from .errors import (
    ArgumentError,
    AwsError,
    BatchRetryExceededError,
    ConditionFailedError,
    CryptoError,
    NotFoundError,
    OneTableError,
    SchemaError,
    TransactionCanceledError,
    UniqueConflictError,
    ValidationError,
)
from .model import Field, FieldGraph, Index, ModelDefinition, parse_indexes
from .params import UNSET, Params
from .query import Cursor, Op, Page, decode_cursor, encode_cursor
from .transaction import Batch, Transaction

if TYPE_CHECKING:
    from .encryption import Cipher
    from .entity import Entity
    from .expression import Expression
    from .ids import uid, ulid, ulid_time, uuid4
    from .metrics import Metrics, MetricsRegistry, OperationMetric
    from .schema_doc import parse_schema_document
    from .table import Table
    from .template import expand, template_values, template_vars
    from .transform import TransformPipeline


def _read_repo_version() -> str:
    try:
        data = json.loads(files(__package__).joinpath("version.json").read_text(encoding="utf-8"))
    except Exception:
        return "0.0.0"

    version = data.get("version")
    return version if isinstance(version, str) and version else "0.0.0"


def _normalize_repo_version(repo_version: str) -> str:
    match = re.match(r"^(\d+\.\d+\.\d+)-rc\.?([0-9]+)$", repo_version)
    if match:
        return f"{match.group(1)}rc{match.group(2)}"
    return repo_version


__repo_version__ = _read_repo_version()
__version__ = _normalize_repo_version(__repo_version__)


def __getattr__(name: str) -> Any:
    if name == "Table":
        from .table import Table

        return Table
    if name == "Entity":
        from .entity import Entity

        return Entity
    if name == "Expression":
        from .expression import Expression

        return Expression
    if name == "Cipher":
        from .encryption import Cipher

        return Cipher
    if name == "TransformPipeline":
        from .transform import TransformPipeline

        return TransformPipeline
    if name == "parse_schema_document":
        from .schema_doc import parse_schema_document

        return parse_schema_document
    if name in {"Metrics", "MetricsRegistry", "OperationMetric"}:
        from . import metrics

        return getattr(metrics, name)
    if name in {"uid", "ulid", "ulid_time", "uuid4"}:
        from . import ids

        return getattr(ids, name)
    if name in {"expand", "template_values", "template_vars"}:
        from . import template

        return getattr(template, name)
    raise AttributeError(name)


__all__ = [
    "ArgumentError",
    "AwsError",
    "Batch",
    "BatchRetryExceededError",
    "Cipher",
    "ConditionFailedError",
    "CryptoError",
    "Cursor",
    "decode_cursor",
    "encode_cursor",
    "Entity",
    "expand",
    "Expression",
    "Field",
    "FieldGraph",
    "Index",
    "Metrics",
    "MetricsRegistry",
    "ModelDefinition",
    "NotFoundError",
    "OneTableError",
    "Op",
    "OperationMetric",
    "Page",
    "Params",
    "parse_indexes",
    "parse_schema_document",
    "SchemaError",
    "Table",
    "template_values",
    "template_vars",
    "Transaction",
    "TransactionCanceledError",
    "TransformPipeline",
    "uid",
    "ulid",
    "ulid_time",
    "UniqueConflictError",
    "UNSET",
    "uuid4",
    "ValidationError",
    "__repo_version__",
    "__version__",
]
