from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(slots=True)
class DdbError(Exception):
    """Base error for DynamoDB operations.

    Caught by the FastAPI exception handler in `peeap.main` and rendered as an
    RFC7807 problem-details response.
    """

    message: str
    operation: str | None = None
    table_name: str | None = None
    key: dict[str, Any] | None = None
    aws_request_id: str | None = None
    retryable: bool = False
    cause: Exception | None = None

    def __str__(self) -> str:
        return self.message

    def to_extensions(self) -> dict[str, Any]:
        ext = {
            "operation": self.operation,
            "table": self.table_name,
            "key": self.key,
            "awsRequestId": self.aws_request_id,
            "retryable": bool(self.retryable),
        }
        return {k: v for k, v in ext.items() if v is not None}


@dataclass(slots=True)
class DdbNotFound(DdbError):
    pass


@dataclass(slots=True)
class DdbConflict(DdbError):
    """Conditional check failed (optimistic write lost, duplicate key, wrong state)."""


@dataclass(slots=True)
class DdbValidation(DdbError):
    pass


@dataclass(slots=True)
class DdbThrottled(DdbError):
    pass


@dataclass(slots=True)
class DdbUnavailable(DdbError):
    pass


@dataclass(slots=True)
class DdbInternal(DdbError):
    pass
