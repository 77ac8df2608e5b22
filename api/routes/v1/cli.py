"""
api/routes/v1/cli.py -- Challenge-response login endpoints for the CLI client.

Routes:
  POST /api/v1/cli/request-nonce   -- public key fingerprint -> fresh nonce
  POST /api/v1/cli/login           -- signed nonce -> cli-session token
  POST /api/v1/cli/logout          -- revoke every cli session (requires auth)
  GET  /api/v1/cli/account/me      -- current identity (requires auth)

Flow:
  1. Client sends the fingerprint of its registered public key.
  2. Server answers with a 10-digit nonce, valid for NONCE_TTL_SECONDS.
  3. Client signs a JSON object containing {"nonce": ...} with its private
     key (RSA-PSS, SHA-256, canonical JSON encoding) and posts the object,
     the nonce and the base64 signature.
  4. Server returns a cli-session token; the client sends it as
     Authorization: Bearer <token> afterwards.

The nonce is consumed only when the signature verifies. Presenting it again
yields "already_used".
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.errors import unwrap
from api.limiter import limiter
from api.models import (
    AccountResponse,
    CliLoginRequest,
    CliLoginResponse,
    LogoutResponse,
    NonceRequest,
    NonceResponse,
)
from auth.accounts import AccountService
from auth.dependencies import get_current_identity
from auth.models import TokenType, UserIdentity
from core.config import get_settings

router = APIRouter()

_settings = get_settings()


@limiter.limit(_settings.nonce_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/cli/request-nonce", response_model=NonceResponse)
def request_nonce(request: Request, body: NonceRequest) -> JSONResponse:
    """Issue a nonce for the key with this fingerprint.

    An unknown fingerprint is a 404 "not_found".
    """
    accounts: AccountService = request.app.state.accounts
    nonce = unwrap(accounts.request_nonce(body.fingerprint))
    resp = JSONResponse(content=NonceResponse(nonce=nonce).model_dump())
    resp.headers["Cache-Control"] = "no-store"
    return resp


@limiter.limit(_settings.login_rate_limit)
@router.post("/cli/login", response_model=CliLoginResponse)
def login(request: Request, body: CliLoginRequest) -> JSONResponse:
    """Exchange a signed nonce for a cli-session token.

    Failure kinds:
      not_found / already_used / expired -- nonce problems
      validation_error                   -- signed payload does not carry the nonce
      verification_error                 -- malformed signature or stored key
      unauthorized                       -- signature does not verify
    """
    accounts: AccountService = request.app.state.accounts
    outcome = unwrap(accounts.login_with_signature(body.nonce, body.signed_payload, body.signature))
    resp = JSONResponse(content=CliLoginResponse(token=outcome.session.token).model_dump())
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/cli/logout", response_model=LogoutResponse)
def logout(request: Request, identity: UserIdentity = Depends(get_current_identity)) -> LogoutResponse:
    accounts: AccountService = request.app.state.accounts
    revoked = unwrap(accounts.logout(identity, TokenType.CLI_SESSION))
    return LogoutResponse(message="Logged out.", revoked=revoked)


@router.get("/cli/account/me", response_model=AccountResponse)
def me(identity: UserIdentity = Depends(get_current_identity)) -> AccountResponse:
    """Return identity information for the currently authenticated CLI user."""
    return AccountResponse.from_identity(identity)
