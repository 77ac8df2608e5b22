"""
auth/dependencies.py -- Authentication gate, authorization guard, and FastAPI Depends() helpers.

authenticate() is the per-request gate. Steps, in order, short-circuiting on
the first failure:
  1. UNAUTHORIZED   -- no token presented
  2. INVALID_TOKEN  -- bad signature, wrong issuer, or not a session claim set
  3. INVALID_TOKEN  -- no session row carries this exact token (revoked/unknown)
  4. TOKEN_EXPIRED  -- row invalidated, row expires_at passed, or JWT exp passed
  5. USER_NOT_FOUND -- embedded user id does not resolve
  6. success        -- UserIdentity for the handler

authorize() runs after authentication: UNAUTHORIZED without an identity,
FORBIDDEN when a non-empty role set does not contain the identity's role.
An empty role set means "any authenticated identity".

Token sources, checked in priority order:
  1. access_token cookie -- set by the web login flow
  2. Authorization: Bearer <token> header -- the CLI client

The resolved identity is returned from the dependency and threaded into the
handler as a parameter. Nothing is stored in module or process state.

Layer rule: may import fastapi (this module is part of the dependency
injection system) but not api/.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import datetime, timezone

from fastapi import HTTPException, Request

from auth.models import SESSION_TYPES, UserIdentity
from auth.result import STATUS_BY_KIND, ErrorKind, Result
from auth.store import CredentialStore
from auth.tokens import ACCESS_TOKEN_COOKIE, claims_expired, decode_token


def authenticate(store: CredentialStore, presented_token: str | None) -> Result[UserIdentity]:
    """Resolve a presented session token to the identity that owns it."""
    if not presented_token:
        return Result.fail(ErrorKind.UNAUTHORIZED, "Authentication required. No access token found.")

    claims = decode_token(presented_token)
    if claims is None or "user_id" not in claims or claims.get("session_type") not in {t.value for t in SESSION_TYPES}:
        return Result.fail(ErrorKind.INVALID_TOKEN, "Invalid token.")

    found = store.get_token_by_value(presented_token)
    if not found.ok:
        if found.error is ErrorKind.NOT_FOUND:
            return Result.fail(ErrorKind.INVALID_TOKEN, "Invalid token. Please log in again.")
        return found
    record = found.data
    if record.type not in SESSION_TYPES or record.user_id != claims["user_id"]:
        return Result.fail(ErrorKind.INVALID_TOKEN, "Invalid token. Please log in again.")

    now = datetime.now(timezone.utc)
    if not record.is_usable(now) or claims_expired(claims, now):
        return Result.fail(ErrorKind.TOKEN_EXPIRED, "Session expired. Please log in again.")

    user = store.get_user_by_id(claims["user_id"])
    if not user.ok:
        if user.error is ErrorKind.NOT_FOUND:
            return Result.fail(ErrorKind.USER_NOT_FOUND, "User not found.")
        return user
    return Result.success(UserIdentity.from_user(user.data))


def authorize(identity: UserIdentity | None, allowed_roles: Iterable[str] = ()) -> Result[UserIdentity]:
    """Check that an authenticated identity carries one of the allowed roles."""
    if identity is None:
        return Result.fail(ErrorKind.UNAUTHORIZED, "Authentication required.")
    roles = frozenset(allowed_roles)
    if roles and identity.role not in roles:
        return Result.fail(ErrorKind.FORBIDDEN, "You don't have permission to access this resource.")
    return Result.success(identity)


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------


def extract_token(request: Request) -> str | None:
    """Return the presented session token from the cookie or Bearer header."""
    token: str | None = request.cookies.get(ACCESS_TOKEN_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:].strip()
    return token or None


def _raise_for(result: Result) -> None:
    raise HTTPException(
        status_code=STATUS_BY_KIND.get(result.error, 401),
        detail={
            "error_type": result.error.value if result.error else ErrorKind.UNAUTHORIZED.value,
            "message": result.message,
            "errors": result.errors,
        },
    )


def get_current_identity(request: Request) -> UserIdentity:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(identity: UserIdentity = Depends(get_current_identity)): ...
    """
    store: CredentialStore = request.app.state.store
    result = authenticate(store, extract_token(request))
    if not result.ok:
        _raise_for(result)
    return result.data


def require_roles(*roles: str) -> Callable[[Request], UserIdentity]:
    """Build a dependency that authenticates and then enforces a role set.

    Raises HTTP 401 if unauthenticated, HTTP 403 if the role is not allowed.
    """

    def dependency(request: Request) -> UserIdentity:
        identity = get_current_identity(request)
        result = authorize(identity, roles)
        if not result.ok:
            _raise_for(result)
        return result.data

    return dependency


require_admin = require_roles("admin")
