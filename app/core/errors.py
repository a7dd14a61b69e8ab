"""
Typed dispatch failures and their HTTP mapping.

Services raise these; routers translate them with dispatch_error_to_http.
"""

import functools
from typing import Awaitable, Callable, TypeVar

from fastapi import HTTPException, status
from sqlalchemy.exc import DBAPIError

T = TypeVar("T")


class DispatchError(Exception):
    """Base class for dispatch failures."""

    def __init__(self, message: str, code: str = "dispatch_error"):
        super().__init__(message)
        self.message = message
        self.code = code


class NotFoundError(DispatchError):
    def __init__(self, message: str, code: str = "not_found"):
        super().__init__(message, code)


class PreconditionFailedError(DispatchError):
    """Input is valid but the action is outside its allowed window or state."""

    def __init__(self, message: str, code: str = "precondition_failed"):
        super().__init__(message, code)


class WindowUnavailableError(PreconditionFailedError):
    """A replacement bid window cannot be opened (e.g. shift already started)."""

    def __init__(self, message: str, code: str = "window_unavailable"):
        super().__init__(message, code)


class StateConflictError(DispatchError):
    """Target changed concurrently; caller must re-fetch."""

    def __init__(self, message: str, code: str = "state_conflict"):
        super().__init__(message, code)


class StaleStateError(StateConflictError):
    """Lost a lock or a conditional update."""

    def __init__(self, message: str, code: str = "stale_state"):
        super().__init__(message, code)


class ForbiddenError(DispatchError):
    def __init__(self, message: str, code: str = "forbidden"):
        super().__init__(message, code)


# Most specific first.
ERROR_STATUS_RULES = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ForbiddenError, status.HTTP_403_FORBIDDEN),
    (StateConflictError, status.HTTP_409_CONFLICT),
    (PreconditionFailedError, status.HTTP_412_PRECONDITION_FAILED),
)


def dispatch_error_to_http(exc: DispatchError) -> HTTPException:
    """Map a DispatchError to an HTTPException with a structured detail."""
    for error_type, status_code in ERROR_STATUS_RULES:
        if isinstance(exc, error_type):
            break
    else:
        status_code = status.HTTP_400_BAD_REQUEST
    return HTTPException(
        status_code=status_code,
        detail={"code": exc.code, "message": exc.message},
    )


# PostgreSQL lock_timeout and deadlock_detected
LOCK_NOT_AVAILABLE = "55P03"
DEADLOCK_DETECTED = "40P01"
LOCK_CONFLICT_STATES = frozenset({LOCK_NOT_AVAILABLE, DEADLOCK_DETECTED})


def is_lock_conflict(exc: DBAPIError) -> bool:
    orig = exc.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return code in LOCK_CONFLICT_STATES


def lock_conflicts_as_stale(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """
    Re-raise a lock timeout or deadlock from any statement of the wrapped
    operation as StaleStateError, so callers roll back and retry.
    """
    @functools.wraps(func)
    async def wrapper(*args, **kwargs) -> T:
        try:
            return await func(*args, **kwargs)
        except DBAPIError as e:
            if is_lock_conflict(e):
                raise StaleStateError(
                    "Row is locked by another operation; re-fetch and retry"
                ) from e
            raise
    return wrapper
