"""
auth/nonces.py -- Nonce challenge engine for the CLI challenge-response login.

Lifecycle of a nonce row (Token.type == "nonce"):

    ISSUED --validate()--> ISSUED        (no persisted change)
    ISSUED --invalidate()--> INVALIDATED (terminal)
    ISSUED --time passes--> EXPIRED      (terminal, detected lazily)

validate() and invalidate() are deliberately separate steps. The login flow
validates, verifies the signature, and only then invalidates. A failed
signature check therefore leaves the nonce usable for a retry inside its
30-second window, while a completed login burns it.

invalidate() is an atomic conditional update. Its data is True only for the
caller whose update flipped is_valid from true to false, which is how two
concurrent logins presenting the same nonce are told apart.

Nonce values are 10 decimal digits drawn from the secrets CSPRNG.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from auth.models import TokenType
from auth.result import ErrorKind, Result
from auth.store import CredentialStore

logger = logging.getLogger("synkrypt.nonces")

NONCE_DIGITS = 10
DEFAULT_NONCE_TTL_SECONDS = 30


@dataclass(frozen=True)
class NonceGrant:
    """Identifiers returned by a successful validate()."""

    user_id: str
    nonce_id: str


def generate_nonce(digits: int = NONCE_DIGITS) -> str:
    """Return a fixed-length numeric nonce, zero-padded."""
    return str(secrets.randbelow(10**digits)).zfill(digits)


class NonceEngine:
    def __init__(self, store: CredentialStore, ttl_seconds: int = DEFAULT_NONCE_TTL_SECONDS) -> None:
        self.store = store
        self.ttl = timedelta(seconds=ttl_seconds)

    def issue(self, user_id: str) -> Result[str]:
        """Generate and persist a nonce for user_id. Returns the nonce value."""
        nonce = generate_nonce()
        expires_at = datetime.now(timezone.utc) + self.ttl
        created = self.store.create_token(user_id, nonce, TokenType.NONCE, expires_at)
        if not created.ok:
            logger.error("Nonce persistence failed for user %s: %s", user_id, created.message)
            if created.error is ErrorKind.DEPENDENCY_FAILURE:
                return created
            return Result.fail(ErrorKind.DEPENDENCY_FAILURE, "Failed to save nonce.")
        logger.info("Nonce issued for user %s", user_id)
        return Result.success(nonce)

    def validate(self, nonce_value: str) -> Result[NonceGrant]:
        """Check that a nonce exists, is unused and unexpired. Does not consume it."""
        found = self.store.get_token_by_value(nonce_value)
        if not found.ok:
            if found.error is ErrorKind.NOT_FOUND:
                return Result.fail(ErrorKind.NOT_FOUND, "Nonce not found.")
            return found
        token = found.data
        if token.type is not TokenType.NONCE:
            return Result.fail(ErrorKind.NOT_FOUND, "Nonce not found.")
        if not token.is_valid:
            return Result.fail(ErrorKind.ALREADY_USED, "Nonce has already been used.")
        if token.is_expired(datetime.now(timezone.utc)):
            return Result.fail(ErrorKind.EXPIRED, "Nonce has expired.")
        return Result.success(NonceGrant(user_id=token.user_id, nonce_id=token.id))

    def invalidate(self, nonce_id: str) -> Result[bool]:
        """Mark a nonce used. True if this call performed the transition."""
        return self.store.update_token_validity(nonce_id, False, expected=True)
