"""
API request and response models for the SynKrypt auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Request fields accept both snake_case and the camelCase names used by the
CLI client and the web frontend (e.g. signed_payload / signedPayload).
"""

import re
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from auth.models import User, UserIdentity
from auth.tokens import BCRYPT_MAX_BYTES

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

NONCE_PATTERN = r"^\d{10}$"
UUID_PATTERN = r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"

_PASSWORD_RULES: list[tuple[str, str]] = [
    (r"[a-z]", "password must contain at least one lowercase letter"),
    (r"[A-Z]", "password must contain at least one uppercase letter"),
    (r"[0-9]", "password must contain at least one number"),
    (r"[^a-zA-Z0-9]", "password must contain at least one special character"),
]


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    admin = "admin"
    member = "member"
    viewer = "viewer"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/web/admin/register."""

    model_config = ConfigDict(populate_by_name=True)

    email: EmailStr
    password: str = Field(min_length=8, max_length=32)
    organization_id: Optional[str] = Field(default=None, alias="organizationId", pattern=UUID_PATTERN)

    @field_validator("password")
    @classmethod
    def check_password_strength(cls, value: str) -> str:
        """Require one lowercase, one uppercase, one digit and one special character.

        max_length counts characters; bcrypt counts UTF-8 bytes, so multi-byte
        passwords are also checked against the byte limit.
        """
        for pattern, message in _PASSWORD_RULES:
            if not re.search(pattern, value):
                raise ValueError(message)
        if len(value.encode("utf-8")) > BCRYPT_MAX_BYTES:
            raise ValueError(f"password must be at most {BCRYPT_MAX_BYTES} bytes when UTF-8 encoded")
        return value


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/web/admin/login.

    No strength rules here -- a login only has to match the stored hash.
    """

    email: EmailStr
    password: str = Field(min_length=1, max_length=255)


class NonceRequest(BaseModel):
    """Request body for POST /api/v1/cli/request-nonce."""

    model_config = ConfigDict(str_strip_whitespace=True)

    fingerprint: str = Field(min_length=1, max_length=128)


class CliLoginRequest(BaseModel):
    """Request body for POST /api/v1/cli/login.

    signed_payload is the exact object the client signed; it must contain the
    nonce under the "nonce" key.
    """

    model_config = ConfigDict(populate_by_name=True)

    nonce: str = Field(pattern=NONCE_PATTERN)
    signed_payload: dict[str, Any] = Field(alias="signedPayload")
    signature: str = Field(min_length=1, max_length=4096)


class UserCreate(BaseModel):
    """Request body for POST /api/v1/web/users (admin only).

    Creates a CLI-only identity: no password, login through a registered key.
    """

    model_config = ConfigDict(populate_by_name=True)

    email: EmailStr
    role: RoleEnum = RoleEnum.member
    organization_id: Optional[str] = Field(default=None, alias="organizationId", pattern=UUID_PATTERN)


class SetupTokenRequest(BaseModel):
    """Request body for POST /api/v1/keys/setup-token (admin only)."""

    email: EmailStr


class KeyRegisterRequest(BaseModel):
    """Request body for POST /api/v1/keys/register."""

    model_config = ConfigDict(populate_by_name=True)

    one_time_token: str = Field(alias="oneTimeToken", min_length=1, max_length=4096)
    public_key: str = Field(alias="publicKey", min_length=1, max_length=16384)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class AccountResponse(BaseModel):
    """The authenticated identity as seen by clients."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    role: str
    organization_id: Optional[str] = None

    @classmethod
    def from_identity(cls, identity: UserIdentity) -> "AccountResponse":
        return cls(id=identity.id, email=identity.email, role=identity.role, organization_id=identity.organization_id)


class LoginResponse(BaseModel):
    """Response for web register and login. The token is also set as a cookie."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_at: Optional[str] = None
    user: AccountResponse


class NonceResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    nonce: str


class CliLoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    token: str


class LogoutResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    revoked: int


class UserResponse(BaseModel):
    """One user account, as returned by the admin user endpoints."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    role: str
    organization_id: Optional[str]
    has_password: bool
    created_at: str

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id or "",
            email=user.email,
            role=user.role,
            organization_id=user.organization_id,
            has_password=user.password_hash is not None,
            created_at=user.created_at or "",
        )


class SetupTokenResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    token: str
    expires_in: int


class KeyRegisterResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    fingerprint: str


class HealthResponse(BaseModel):
    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    """Uniform error envelope returned by every failing endpoint."""

    success: bool = False
    error_type: str
    message: str
    errors: list[Any] = Field(default_factory=list)
