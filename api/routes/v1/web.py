"""
api/routes/v1/web.py -- Web (password) account and user management endpoints.

Routes:
  POST   /api/v1/web/admin/register    -- create admin + web session; sets cookie
  POST   /api/v1/web/admin/login       -- password login; sets cookie
  POST   /api/v1/web/admin/logout      -- revoke every web session; clears cookie
  GET    /api/v1/web/admin/account     -- current identity (requires auth)
  DELETE /api/v1/web/admin/account     -- delete own account (requires auth)
  POST   /api/v1/web/users             -- create CLI-only user (admin only)
  DELETE /api/v1/web/users/{user_id}   -- delete a user (admin only)

Security:
  register and login are rate-limited per IP (LOGIN_RATE_LIMIT).
  Login goes through AccountService -> authenticate_user(), which equalizes
  timing between unknown emails and wrong passwords.
  Cache-Control: no-store on every response that carries a token.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from api.errors import unwrap
from api.limiter import limiter
from api.models import (
    AccountResponse,
    LoginRequest,
    LoginResponse,
    LogoutResponse,
    RegisterRequest,
    UserCreate,
    UserResponse,
)
from auth.accounts import AccountService, LoginOutcome
from auth.dependencies import get_current_identity, require_admin
from auth.models import TokenType, UserIdentity
from auth.tokens import clear_auth_cookie, set_auth_cookie
from core.config import get_settings

# Auth policy:
# - POST   /web/admin/register:   public -- bootstraps the first admin
# - POST   /web/admin/login:      public
# - POST   /web/admin/logout:     requires auth (get_current_identity)
# - GET    /web/admin/account:    requires auth (get_current_identity)
# - DELETE /web/admin/account:    requires auth (get_current_identity)
# - POST   /web/users:            requires admin (require_admin)
# - DELETE /web/users/{user_id}:  requires admin (require_admin)
router = APIRouter()

_settings = get_settings()


def _session_response(outcome: LoginOutcome, status_code: int = 200) -> JSONResponse:
    session = outcome.session
    resp = JSONResponse(
        status_code=status_code,
        content=LoginResponse(
            access_token=session.token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_at=session.expires_at.isoformat() if session.expires_at else None,
            user=AccountResponse.from_identity(outcome.identity),
        ).model_dump(),
    )
    set_auth_cookie(resp, session.token, session.expires_at)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(_settings.login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/web/admin/register", response_model=LoginResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create an admin account and log it in.

    The account and its first web session are written in one transaction:
    if the session cannot be persisted, no account is left behind.
    """
    accounts: AccountService = request.app.state.accounts
    outcome = unwrap(accounts.register_admin(str(body.email), body.password, body.organization_id))
    return _session_response(outcome, status_code=201)


@limiter.limit(_settings.login_rate_limit)
@router.post("/web/admin/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set the session cookie.

    Wrong email and wrong password produce the same "unauthorized" error so
    the response does not reveal which accounts exist. An active web session
    is reused rather than minting a second one.
    """
    accounts: AccountService = request.app.state.accounts
    outcome = unwrap(accounts.login_with_password(str(body.email), body.password))
    return _session_response(outcome)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/web/admin/logout", response_model=LogoutResponse)
def logout(request: Request, identity: UserIdentity = Depends(get_current_identity)) -> JSONResponse:
    """Revoke every web session of the caller and clear the cookie."""
    accounts: AccountService = request.app.state.accounts
    revoked = unwrap(accounts.logout(identity, TokenType.WEB_SESSION))
    resp = JSONResponse(content=LogoutResponse(message="Logged out.", revoked=revoked).model_dump())
    clear_auth_cookie(resp)
    return resp


@router.get("/web/admin/account", response_model=AccountResponse)
def get_account(identity: UserIdentity = Depends(get_current_identity)) -> AccountResponse:
    return AccountResponse.from_identity(identity)


@router.delete("/web/admin/account", status_code=204)
def delete_account(request: Request, identity: UserIdentity = Depends(get_current_identity)) -> Response:
    """Delete the caller's account together with its key and tokens."""
    accounts: AccountService = request.app.state.accounts
    unwrap(accounts.delete_account(identity.id))
    resp = Response(status_code=204)
    clear_auth_cookie(resp)
    return resp


# ---------------------------------------------------------------------------
# User management (admin only)
# ---------------------------------------------------------------------------


@router.post("/web/users", response_model=UserResponse, status_code=201)
def create_user(
    request: Request,
    body: UserCreate,
    _admin: UserIdentity = Depends(require_admin),
) -> UserResponse:
    """Create a password-less user who will log in with a registered key.

    Follow up with POST /keys/setup-token to hand the user a key setup token.
    """
    accounts: AccountService = request.app.state.accounts
    user = unwrap(accounts.create_cli_user(str(body.email), body.role.value, body.organization_id))
    return UserResponse.from_user(user)


@router.delete("/web/users/{user_id}", status_code=204)
def delete_user(
    request: Request,
    user_id: str,
    _admin: UserIdentity = Depends(require_admin),
) -> None:
    accounts: AccountService = request.app.state.accounts
    unwrap(accounts.delete_account(user_id))
