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
    max_attempts: int = 6
    base_delay_s: float = 0.05
    max_delay_s: float = 1.5


# Money movement uses TransactWriteItems; conflicts there are common under load.
TRANSACTION_POLICY = RetryPolicy(max_attempts=8, base_delay_s=0.08, max_delay_s=2.0)

_RETRYABLE_CODES = {
    "ProvisionedThroughputExceededException",
    "ThrottlingException",
    "RequestLimitExceeded",
    "InternalServerError",
    "ServiceUnavailable",
    "TransactionConflictException",
}


def _sleep_backoff(policy: RetryPolicy, attempt: int) -> None:
    # Full jitter exponential backoff.
    exp = min(policy.max_delay_s, policy.base_delay_s * (2 ** max(0, attempt - 1)))
    time.sleep(random.random() * exp)


def _client_error_code(e: ClientError) -> str:
    return str(((e.response or {}).get("Error") or {}).get("Code") or "")


def _client_request_id(e: ClientError) -> str | None:
    return ((e.response or {}).get("ResponseMetadata") or {}).get("RequestId")


def _cancellation_codes(e: ClientError) -> list[str]:
    reasons = (e.response or {}).get("CancellationReasons") or []
    return [str((r or {}).get("Code") or "") for r in reasons]


def map_client_error(
    *,
    operation: str,
    table_name: str | None,
    key: dict[str, Any] | None,
    exc: Exception,
) -> DdbError:
    if isinstance(exc, DdbError):
        return exc

    ctx: dict[str, Any] = {"operation": operation, "table_name": table_name, "key": key, "cause": exc}

    if isinstance(exc, ClientError):
        code = _client_error_code(exc)
        ctx["aws_request_id"] = _client_request_id(exc)

        if code == "ConditionalCheckFailedException":
            return DdbConflict(message="DynamoDB conditional check failed", **ctx)

        if code == "TransactionCanceledException":
            reasons = _cancellation_codes(exc)
            if "TransactionConflict" in reasons or "ThrottlingError" in reasons:
                return DdbThrottled(message="DynamoDB transaction conflict", retryable=True, **ctx)
            if "ConditionalCheckFailed" in reasons:
                return DdbConflict(message="DynamoDB transaction condition failed", **ctx)
            return DdbInternal(message="DynamoDB transaction cancelled", **ctx)

        if code in ("ValidationException", "ParamValidationError"):
            return DdbValidation(message="DynamoDB request validation failed", **ctx)

        if code in ("AccessDeniedException", "UnrecognizedClientException", "ResourceNotFoundException"):
            return DdbUnavailable(message="DynamoDB table unavailable", **ctx)

        if code in _RETRYABLE_CODES:
            return DdbThrottled(message="DynamoDB request throttled or unavailable", retryable=True, **ctx)

        return DdbInternal(message=f"DynamoDB request failed ({code or 'ClientError'})", **ctx)

    if isinstance(exc, BotoCoreError):
        return DdbUnavailable(message="DynamoDB client error", retryable=True, **ctx)

    return DdbInternal(message="Unexpected DynamoDB error", **ctx)


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
        except Exception as e:  # noqa: BLE001
            mapped = map_client_error(operation=operation, table_name=table_name, key=key, exc=e)
            # Validation/conflict errors are final.
            if not mapped.retryable or attempt >= attempts:
                if mapped is e:
                    raise
                raise mapped from e
            log.warning(
                "ddb_retry",
                operation=operation,
                attempt=attempt,
                error_type=type(mapped).__name__,
            )
            _sleep_backoff(policy, attempt)

    raise DdbInternal(message="DynamoDB request failed", operation=operation, table_name=table_name, key=key)
