"""
auth/tokens.py -- JWT, password hashing, and cookie utilities.

Security design decisions:
  JWT: python-jose with HS256. Session and key setup tokens are signed with
       SECRET_KEY. decode_token() returns None on any signature or format
       failure -- callers turn that into INVALID_TOKEN. Expiry is NOT checked
       here: the authentication gate checks expiry against the revocation
       record so an expired token and a revoked token report the same kind.

  Passwords: bcrypt with a configurable cost factor (BCRYPT_ROUNDS, default
       10). The _DUMMY_HASH constant enables timing equalization in
       authenticate_user() so response time does not reveal whether an email
       is registered.

  SECRET_KEY: sourced from core.config.get_settings(), which validates it at
       startup.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import bcrypt
from jose import JWTError, jwt

from auth.models import User
from auth.result import ErrorKind, Result
from core.config import get_settings

if TYPE_CHECKING:
    from auth.store import CredentialStore

logger = logging.getLogger("synkrypt.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

ACCESS_TOKEN_COOKIE = "access_token"

BCRYPT_MAX_BYTES = 72

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only reads the first 72 bytes of its input; newer releases raise on
    anything longer, older ones silently truncate. Passwords over the limit
    are rejected here with ValueError so two passwords sharing a 72-byte
    prefix can never share a hash. The limit is in UTF-8 bytes, not
    characters: 32 emoji are 128 bytes.
    """
    encoded = plain.encode("utf-8")
    if len(encoded) > BCRYPT_MAX_BYTES:
        raise ValueError(f"password must be at most {BCRYPT_MAX_BYTES} bytes when UTF-8 encoded")
    salt = bcrypt.gensalt(rounds=_settings.bcrypt_rounds)
    return bcrypt.hashpw(encoded, salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash (constant-time)."""
    encoded = plain.encode("utf-8")
    if len(encoded) > BCRYPT_MAX_BYTES:
        return False
    try:
        return bcrypt.checkpw(encoded, hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash.
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("synkrypt_timing_dummy")


def authenticate_user(store: CredentialStore, email: str, password: str) -> Result[User]:
    """Authenticate a web password login with timing equalization.

    Always runs bcrypt whether or not the user exists or has a password:
    - Unknown email / CLI-only user: bcrypt runs against _DUMMY_HASH
    - Wrong password: bcrypt runs against the real hash

    Returns UNAUTHORIZED for every credential failure so the response does not
    reveal which part was wrong. Store outages keep their own kind.
    """
    found = store.get_user_by_email(email)
    if not found.ok and found.error is not ErrorKind.NOT_FOUND:
        return found
    user = found.data
    if user is None or user.password_hash is None:
        verify_password(password, _DUMMY_HASH)
        return Result.fail(ErrorKind.UNAUTHORIZED, "Invalid email or password.")
    if not verify_password(password, user.password_hash):
        return Result.fail(ErrorKind.UNAUTHORIZED, "Invalid email or password.")
    return Result.success(user)


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def encode_token(claims: dict[str, Any], expires_at: datetime | None = None) -> str:
    """Sign claims into a JWT. iss is always added; exp only when expires_at is given."""
    payload = dict(claims)
    payload["iss"] = _settings.jwt_issuer
    if expires_at is not None:
        payload["exp"] = int(expires_at.timestamp())
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_token(token: str) -> dict[str, Any] | None:
    """Verify the signature and issuer of a JWT and return its claims, or None.

    Expiry is deliberately not verified here (see module docstring).
    """
    try:
        return jwt.decode(
            token,
            _settings.secret_key,
            algorithms=[_ALGORITHM],
            issuer=_settings.jwt_issuer,
            options={"verify_exp": False},
        )
    except JWTError:
        return None


def claims_expired(claims: dict[str, Any], now: datetime | None = None) -> bool:
    """Return True if the claims carry an exp that has passed."""
    exp = claims.get("exp")
    if exp is None:
        return False
    if not isinstance(exp, (int, float)):
        return True
    current = now or datetime.now(timezone.utc)
    return current.timestamp() >= exp


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, expires_at: datetime | None = None) -> None:
    """Write the session token as an httpOnly, SameSite=Strict cookie.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="strict": never sent on cross-site requests (CSRF mitigation).
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: matches the token expiry so both expire together.
    """
    max_age = _settings.session_expire_seconds
    if expires_at is not None:
        max_age = max(0, int((expires_at - datetime.now(timezone.utc)).total_seconds()))
    response.set_cookie(
        ACCESS_TOKEN_COOKIE,
        value=token,
        httponly=True,
        samesite="strict",
        secure=_settings.secure_cookies,
        max_age=max_age,
    )


def clear_auth_cookie(response) -> None:
    response.delete_cookie(ACCESS_TOKEN_COOKIE, httponly=True, samesite="strict", secure=_settings.secure_cookies)
