from __future__ import annotations

import random
import time
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from botocore.exceptions import BotoCoreError, ClientError

from ...observability.logging import get_logger
from .errors import (
    DdbConflict,
    DdbError,
    DdbInternal,
    DdbThrottled,
    DdbUnavailable,
    DdbValidation,
)

T = TypeVar("T")

log = get_logger("ddb_retry")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay_s: float = 0.05
    max_delay_s: float = 1.5


_THROTTLE_CODES = {
    "ProvisionedThroughputExceededException",
    "ThrottlingException",
    "RequestLimitExceeded",
    "InternalServerError",
    "ServiceUnavailable",
    "TransactionConflictException",
}

_VALIDATION_CODES = {"ValidationException", "ParamValidationError", "SerializationException"}

_ACCESS_CODES = {"AccessDeniedException", "UnrecognizedClientException", "ResourceNotFoundException"}


def _backoff_delay(policy: RetryPolicy, attempt: int) -> float:
    # Full jitter exponential backoff.
    exp = min(policy.max_delay_s, policy.base_delay_s * (2 ** max(0, attempt - 1)))
    return random.random() * exp


def _error_code(e: ClientError) -> str:
    return str(((e.response or {}).get("Error") or {}).get("Code") or "")


def _request_id(e: ClientError) -> str | None:
    return ((e.response or {}).get("ResponseMetadata") or {}).get("RequestId")


def _cancellation_codes(e: ClientError) -> list[str]:
    reasons = (e.response or {}).get("CancellationReasons") or []
    return [str((r or {}).get("Code") or "None") for r in reasons]


def map_storage_error(
    *,
    operation: str,
    table_name: str | None,
    key: dict[str, Any] | None,
    exc: Exception,
) -> DdbError:
    """Translate botocore failures into the DdbError family."""
    if isinstance(exc, DdbError):
        return exc

    common: dict[str, Any] = {"operation": operation, "table_name": table_name, "key": key, "cause": exc}

    if isinstance(exc, ClientError):
        code = _error_code(exc)
        common["aws_request_id"] = _request_id(exc)

        if code == "ConditionalCheckFailedException":
            return DdbConflict(message="Conditional check failed", retryable=False, **common)

        if code == "TransactionCanceledException":
            reasons = _cancellation_codes(exc)
            # Only contention is worth retrying; a failed condition is final.
            if any(r == "TransactionConflict" or r == "TransactionConflictException" for r in reasons) and not any(
                r == "ConditionalCheckFailed" for r in reasons
            ):
                return DdbThrottled(message="Transaction conflict", retryable=True, **common)
            return DdbConflict(
                message="Transaction cancelled",
                retryable=False,
                cancellation_codes=reasons,
                **common,
            )

        if code in _VALIDATION_CODES:
            return DdbValidation(message="DynamoDB request validation failed", retryable=False, **common)

        if code in _ACCESS_CODES:
            return DdbUnavailable(message=f"DynamoDB unavailable ({code})", retryable=False, **common)

        if code in _THROTTLE_CODES:
            return DdbThrottled(message="DynamoDB request throttled", retryable=True, **common)

        return DdbInternal(message=f"DynamoDB request failed ({code or 'ClientError'})", retryable=False, **common)

    if isinstance(exc, BotoCoreError):
        return DdbUnavailable(message="DynamoDB client error", retryable=True, **common)

    return DdbInternal(message="Unexpected DynamoDB error", retryable=False, **common)


def ddb_call(
    operation: str,
    fn: Callable[[], T],
    *,
    table_name: str | None = None,
    key: dict[str, Any] | None = None,
    retry_policy: RetryPolicy | None = None,
) -> T:
    policy = retry_policy or RetryPolicy()
    attempts = max(1, int(policy.max_attempts))

    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except (ClientError, BotoCoreError, DdbError) as e:
            mapped = map_storage_error(operation=operation, table_name=table_name, key=key, exc=e)
            if not mapped.retryable or attempt >= attempts:
                if mapped is e:
                    raise
                raise mapped from e
            delay = _backoff_delay(policy, attempt)
            log.warning(
                "ddb_retry",
                operation=operation,
                table=table_name,
                attempt=attempt,
                delay_s=round(delay, 3),
                error=mapped.message,
            )
            time.sleep(delay)

    raise DdbInternal(message="DynamoDB request failed", operation=operation, table_name=table_name, key=key)
