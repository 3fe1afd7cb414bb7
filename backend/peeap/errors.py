from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(slots=True)
class DomainError(Exception):
    """Business-rule failure raised by application services.

    Rendered as problem+json by `peeap.main`; `code` is a stable,
    machine-readable reason clients can switch on.
    """

    message: str
    code: str | None = None
    details: dict[str, Any] | None = None

    def __str__(self) -> str:
        return self.message


@dataclass(slots=True)
class NotFound(DomainError):
    pass


@dataclass(slots=True)
class InvalidState(DomainError):
    pass


@dataclass(slots=True)
class Forbidden(DomainError):
    pass


@dataclass(slots=True)
class ValidationFailed(DomainError):
    pass


@dataclass(slots=True)
class UpstreamError(DomainError):
    """A payment rail or push provider failed."""

    status: int | None = None
