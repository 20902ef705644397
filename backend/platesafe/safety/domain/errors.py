"""Error taxonomy shared by the trust-and-safety services."""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Awaitable, TypeVar

from fastapi import status

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Stable error identifiers surfaced to the HTTP layer."""

    VALIDATION = "validation_error"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    RATE_LIMITED = "rate_limit_exceeded"
    FORBIDDEN = "authorization_error"
    DEPENDENCY_TIMEOUT = "dependency_timeout"


class SafetyError(Exception):
    """Base class for domain errors raised by the safety core."""

    kind: ErrorKind = ErrorKind.VALIDATION
    status_code: int = status.HTTP_400_BAD_REQUEST
    detail: str = "safety_error"
    retryable: bool = False

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.detail)
        if detail:
            self.detail = detail


class ValidationError(SafetyError):
    """Malformed or ineligible input; the caller must fix the request."""

    kind = ErrorKind.VALIDATION
    status_code = status.HTTP_400_BAD_REQUEST
    detail = "validation_error"


class NotFoundError(SafetyError):
    """Referenced user, message, report or escalation is absent."""

    kind = ErrorKind.NOT_FOUND
    status_code = status.HTTP_404_NOT_FOUND
    detail = "not_found"


class ConflictError(SafetyError):
    """Operation conflicts with current state (duplicate report, maximal escalation)."""

    kind = ErrorKind.CONFLICT
    status_code = status.HTTP_409_CONFLICT
    detail = "conflict"


class RateLimitExceeded(SafetyError):
    """Quota exhausted for the current window."""

    kind = ErrorKind.RATE_LIMITED
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    detail = "Too many requests. Please try again later."

    def __init__(self, detail: str | None = None, *, retry_after: int = 0) -> None:
        super().__init__(detail)
        self.retry_after = retry_after


class AuthorizationError(SafetyError):
    """Acting identity lacks the rights for the requested action."""

    kind = ErrorKind.FORBIDDEN
    status_code = status.HTTP_403_FORBIDDEN
    detail = "forbidden"


class AccountBlocked(AuthorizationError):
    """The acting account is blocked; `reason` is shown to the user verbatim."""

    detail = "Account blocked"

    def __init__(self, reason: str | None = None) -> None:
        super().__init__(reason or "Your account has been blocked due to trust and safety violations.")
        self.reason = self.detail


class DependencyTimeout(SafetyError):
    """A store or collaborator call exceeded its bound. Nothing was applied."""

    kind = ErrorKind.DEPENDENCY_TIMEOUT
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    detail = "dependency_timeout"
    retryable = True


async def bounded(awaitable: Awaitable[T], timeout: float | None, *, dependency: str) -> T:
    """Await ``awaitable`` within ``timeout`` seconds, mapping expiry to DependencyTimeout."""

    if timeout is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise DependencyTimeout(f"{dependency}_timeout") from exc


__all__ = [
    "AccountBlocked",
    "AuthorizationError",
    "ConflictError",
    "DependencyTimeout",
    "ErrorKind",
    "NotFoundError",
    "RateLimitExceeded",
    "SafetyError",
    "ValidationError",
    "bounded",
]
