"""
auth/result.py -- Tagged success/failure result shared by every auth component.

Every store, engine and service operation in auth/ returns a Result instead of
raising for expected failures (token missing, nonce reused, key malformed).
The single outer boundary (api/errors.py) turns a failed Result into an HTTP
response. Unexpected exceptions are still exceptions and are handled by the
catch-all handler in api/main.py.

ErrorKind values double as the wire-level "error_type" string, and
STATUS_BY_KIND gives each one its HTTP status.

ResultError lets a caller abort a multi-statement transaction scope from a
failed Result: raising it inside CredentialStore.transaction() rolls the
transaction back, and the caller catches it outside the scope to return the
carried Result.

Layer rule: stdlib only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    VALIDATION_ERROR = "validation_error"
    VERIFICATION_ERROR = "verification_error"
    UNAUTHORIZED = "unauthorized"
    INVALID_TOKEN = "invalid_token"
    TOKEN_EXPIRED = "token_expired"
    USER_NOT_FOUND = "user_not_found"
    ALREADY_USED = "already_used"
    EXPIRED = "expired"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    ALREADY_EXISTS = "already_exists"
    DEPENDENCY_FAILURE = "dependency_failure"
    UNKNOWN_ERROR = "unknown_error"


# HTTP status for each kind. Read by api/errors.unwrap and by the gate in
# auth/dependencies so both surfaces agree.
STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION_ERROR: 400,
    ErrorKind.VERIFICATION_ERROR: 400,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.INVALID_TOKEN: 401,
    ErrorKind.TOKEN_EXPIRED: 401,
    ErrorKind.USER_NOT_FOUND: 401,
    ErrorKind.ALREADY_USED: 401,
    ErrorKind.EXPIRED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.ALREADY_EXISTS: 409,
    ErrorKind.DEPENDENCY_FAILURE: 503,
    ErrorKind.UNKNOWN_ERROR: 500,
}


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of an auth operation.

    ok=True carries data; ok=False carries an ErrorKind, a human-readable
    message, and optional structured error details for the response body.
    """

    ok: bool
    data: T | None = None
    error: ErrorKind | None = None
    message: str = ""
    errors: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def success(cls, data: T | None = None) -> Result[T]:
        return cls(ok=True, data=data)

    @classmethod
    def fail(cls, error: ErrorKind, message: str, errors: list[dict[str, Any]] | None = None) -> Result[Any]:
        return cls(ok=False, error=error, message=message, errors=list(errors or []))

    def unwrap(self) -> T:
        """Return data on success, raise ResultError on failure."""
        if not self.ok:
            raise ResultError(self)
        return self.data  # type: ignore[return-value]


class ResultError(Exception):
    """A failed Result promoted to an exception to unwind a transaction scope."""

    def __init__(self, result: Result[Any]) -> None:
        super().__init__(f"{result.error.value if result.error else 'error'}: {result.message}")
        self.result = result
