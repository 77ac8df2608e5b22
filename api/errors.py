"""
api/errors.py -- Translate failed auth Results into HTTP errors.

Route handlers call unwrap(result); on failure it raises HTTPException
with the status from auth.result.STATUS_BY_KIND (the table the
authentication gate also uses) and a structured detail dict that the
handlers in api/main.py render as the standard error envelope:

    {"success": false, "error_type": ..., "message": ..., "errors": [...]}
"""

from __future__ import annotations

from typing import TypeVar

from fastapi import HTTPException

from auth.result import STATUS_BY_KIND, ErrorKind, Result

T = TypeVar("T")


def error_detail(kind: ErrorKind, message: str, errors: list | None = None) -> dict:
    return {"error_type": kind.value, "message": message, "errors": list(errors or [])}


def unwrap(result: Result[T]) -> T:
    """Return the data of a successful Result or raise the matching HTTPException."""
    if result.ok:
        return result.data  # type: ignore[return-value]
    kind = result.error or ErrorKind.UNKNOWN_ERROR
    raise HTTPException(
        status_code=STATUS_BY_KIND.get(kind, 500),
        detail=error_detail(kind, result.message, result.errors),
    )
