"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic beyond trivial
predicates). Stores and services do the work.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

ROLES: frozenset[str] = frozenset({"admin", "member", "viewer"})


class TokenType(str, Enum):
    NONCE = "nonce"
    WEB_SESSION = "web-session"
    CLI_SESSION = "cli-session"
    KEY_GEN = "key-gen"


SESSION_TYPES: frozenset[TokenType] = frozenset({TokenType.WEB_SESSION, TokenType.CLI_SESSION})


@dataclass
class User:
    """An identity known to the credential store.

    password_hash is None for CLI-only identities created by an admin; those
    users can only authenticate through the challenge-response login.
    organization_id is None until the user is linked to a tenant.
    """

    email: str
    role: str  # "admin", "member", "viewer"
    id: str | None = None  # UUID4 string, assigned by the store
    password_hash: str | None = None
    organization_id: str | None = None
    created_at: str | None = None


@dataclass
class PublicKey:
    """An RSA public key registered for CLI challenge-response login.

    fingerprint is the SHA-256 hex digest of the DER SubjectPublicKeyInfo
    encoding (see auth.signatures.public_key_fingerprint). A user owns at most
    one key; keys are never updated.
    """

    user_id: str
    fingerprint: str
    key_value: str  # PEM
    id: str | None = None
    created_at: str | None = None


@dataclass
class Token:
    """Unified record for nonces, sessions and one-time key setup tokens.

    fingerprint is the SHA-256 hex digest of token_value, used as the indexed
    lookup key. expires_at is None only for cli-session tokens, which stay
    valid until revoked.
    """

    user_id: str
    token_value: str
    type: TokenType
    fingerprint: str
    is_valid: bool = True
    expires_at: datetime | None = None
    id: str | None = None
    created_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def is_usable(self, now: datetime) -> bool:
        return self.is_valid and not self.is_expired(now)


@dataclass(frozen=True)
class UserIdentity:
    """The resolved caller, handed to protected handlers after authentication."""

    id: str
    email: str
    role: str
    organization_id: str | None = None

    @classmethod
    def from_user(cls, user: User) -> UserIdentity:
        return cls(id=user.id or "", email=user.email, role=user.role, organization_id=user.organization_id)
