"""Tagged result envelope returned by the auth services.

Services return ``Ok(value)`` or ``Err(kind, message)`` instead of raising, so
that callers can tell a denied sign-in from a broken database. Routes turn an
``Err`` into an HTTP error with :func:`unwrap`.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar, Union

from fastapi import HTTPException, status

T = TypeVar("T")


class ErrorKind(str, Enum):
    AUTHENTICATION = "authentication"
    UNVERIFIED = "unverified"
    RATE_LIMITED = "rate_limited"
    VALIDATION = "validation"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    DEPENDENCY = "dependency"


STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.AUTHENTICATION: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.UNVERIFIED: status.HTTP_403_FORBIDDEN,
    ErrorKind.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.DEPENDENCY: status.HTTP_503_SERVICE_UNAVAILABLE,
}


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True, slots=True)
class Err:
    kind: ErrorKind
    message: str
    # Extra keys merged into the JSON error body (e.g. requiresEmailVerification).
    extra: dict[str, Any] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)
    # Internal detail for logs only; never rendered.
    reason: str | None = None
    status_code: int | None = None

    @property
    def ok(self) -> bool:
        return False

    @property
    def http_status(self) -> int:
        return self.status_code or STATUS_BY_KIND[self.kind]


Result = Union[Ok[T], Err]


class ServiceError(HTTPException):
    """HTTPException that carries extra body fields for the error handler."""

    def __init__(
        self,
        status_code: int,
        detail: str,
        extra: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(status_code=status_code, detail=detail, headers=headers or None)
        self.extra = extra or {}


def unwrap(result: Result[T]) -> T:
    """Return the value of an ``Ok`` or raise the matching HTTP error."""
    if isinstance(result, Ok):
        return result.value
    raise ServiceError(
        status_code=result.http_status,
        detail=result.message,
        extra=result.extra,
        headers=result.headers,
    )


__all__ = ["Err", "ErrorKind", "Ok", "Result", "STATUS_BY_KIND", "ServiceError", "unwrap"]
