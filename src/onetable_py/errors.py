from __future__ import annotations

from collections.abc import Mapping
from typing import Any


class OneTableError(Exception):
    default_code = "OneTableError"

    def __init__(
        self,
        message: str = "",
        *,
        code: str | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.context: dict[str, Any] = dict(context or {})


class SchemaError(OneTableError, ValueError):
    default_code = "SchemaError"


class ArgumentError(OneTableError, ValueError):
    default_code = "ArgumentError"


class ValidationError(OneTableError):
    default_code = "ValidationError"

    def __init__(
        self,
        message: str = "",
        *,
        details: Mapping[str, str] | None = None,
        code: str | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message, code=code, context=context)
        self.details: dict[str, str] = dict(details or {})


class ConditionFailedError(OneTableError):
    default_code = "ConditionalCheckFailedException"


class UniqueConflictError(ConditionFailedError):
    default_code = "UniqueError"

    def __init__(self, *, model: str, fields: tuple[str, ...], context: Mapping[str, Any] | None = None) -> None:
        super().__init__(
            f'Cannot create unique attributes "{", ".join(fields)}" for "{model}", an item of the same name already exists',
            context=context,
        )
        self.model = model
        self.fields = fields


class NotFoundError(OneTableError):
    default_code = "ResourceNotFoundException"


class CryptoError(OneTableError):
    default_code = "CryptoError"


class BatchRetryExceededError(OneTableError):
    default_code = "BatchRetryExceeded"

    def __init__(self, *, operation: str, unprocessed_count: int) -> None:
        super().__init__(f"{operation}: retry limit exceeded (unprocessed={unprocessed_count})")
        self.operation = operation
        self.unprocessed_count = unprocessed_count


class TransactionCanceledError(OneTableError):
    default_code = "TransactionCanceledException"

    def __init__(self, *, message: str, reason_codes: tuple[str, ...]) -> None:
        super().__init__(message)
        self.reason_codes = reason_codes


class AwsError(OneTableError):
    def __init__(self, *, code: str, message: str) -> None:
        super().__init__(f"{code}: {message}", code=code)
        self.message = message
