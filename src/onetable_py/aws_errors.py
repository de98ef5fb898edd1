from __future__ import annotations

from botocore.exceptions import ClientError

from .errors import (
    AwsError,
    ConditionFailedError,
    NotFoundError,
    TransactionCanceledError,
    ValidationError,
)


def client_error_code(err: ClientError) -> str:
    return str(err.response.get("Error", {}).get("Code", ""))


def map_client_error(err: ClientError) -> Exception:
    code = client_error_code(err)
    message = str(err.response.get("Error", {}).get("Message", ""))

    if code == "ConditionalCheckFailedException":
        return ConditionFailedError(message or "conditional check failed", context={"code": code})
    if code == "ValidationException":
        return ValidationError(message, code=code)
    if code == "ResourceNotFoundException":
        return NotFoundError(message)

    return AwsError(code=code or "UnknownError", message=message or str(err))


def transaction_reason_codes(err: ClientError) -> tuple[str, ...]:
    reasons_raw = err.response.get("CancellationReasons") or []
    return tuple(
        str(reason.get("Code", "Unknown"))
        for reason in reasons_raw
        if isinstance(reason, dict) and reason.get("Code")
    )


def is_condition_failure(err: ClientError) -> bool:
    code = client_error_code(err)
    if code == "ConditionalCheckFailedException":
        return True
    if code != "TransactionCanceledException":
        return False
    message = str(err.response.get("Error", {}).get("Message", ""))
    return "ConditionalCheckFailed" in transaction_reason_codes(err) or "ConditionalCheckFailed" in message


def map_transaction_error(err: ClientError) -> Exception:
    code = client_error_code(err)
    message = str(err.response.get("Error", {}).get("Message", ""))

    if code == "TransactionCanceledException":
        reason_codes = transaction_reason_codes(err)
        if is_condition_failure(err):
            return ConditionFailedError(
                message or "transaction canceled: ConditionalCheckFailed",
                context={"reason_codes": reason_codes},
            )

        return TransactionCanceledError(
            message=message or "transaction canceled",
            reason_codes=reason_codes,
        )

    return map_client_error(err)
