"""
api/routes/v1/keys.py -- Public key setup endpoints.

Routes:
  POST /api/v1/keys/setup-token   -- mint a one-time key setup token (admin only)
  POST /api/v1/keys/register      -- redeem the token with an RSA public key

The setup token is the only credential a password-less user ever receives
out of band. It is single-use: registering a key burns it.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.errors import unwrap
from api.models import KeyRegisterRequest, KeyRegisterResponse, SetupTokenRequest, SetupTokenResponse
from auth.dependencies import require_admin
from auth.keys import KeySetupService
from auth.models import UserIdentity
from core.config import get_settings

router = APIRouter()

_settings = get_settings()


@router.post("/keys/setup-token", response_model=SetupTokenResponse, status_code=201)
def create_setup_token(
    request: Request,
    body: SetupTokenRequest,
    _admin: UserIdentity = Depends(require_admin),
) -> JSONResponse:
    """Mint a key setup token for an existing user.

    The token is returned to the calling admin, who passes it on to the user.
    """
    key_setup: KeySetupService = request.app.state.key_setup
    token = unwrap(key_setup.issue_setup_token(str(body.email)))
    resp = JSONResponse(
        status_code=201,
        content=SetupTokenResponse(token=token, expires_in=_settings.key_setup_expire_seconds).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/keys/register", response_model=KeyRegisterResponse, status_code=201)
def register_key(request: Request, body: KeyRegisterRequest) -> KeyRegisterResponse:
    key_setup: KeySetupService = request.app.state.key_setup
    key = unwrap(key_setup.register_public_key(body.one_time_token, body.public_key))
    return KeyRegisterResponse(user_id=key.user_id, fingerprint=key.fingerprint)
