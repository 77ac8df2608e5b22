"""
auth/sessions.py -- Session issuer for web and CLI sessions.

A session token is an HS256 JWT plus a row in the tokens table. The JWT alone
is never sufficient: the authentication gate cross-checks every presented
token against its row, which is what makes server-side logout possible.
Hence the ordering rule in create_session(): the minted token is returned
only after its row was written.

Claims: user_id, session_type, iat, jti, iss, and exp for web sessions.
cli-session tokens carry no exp and no expires_at -- they are long-lived CLI
credentials valid until revoked by logout or account deletion. jti makes
two tokens minted for the same user within the same second distinct.

One active session per (user, session type): if a valid, unexpired row
already exists it is returned unchanged instead of minting a second one.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy.engine import Connection

from auth.models import SESSION_TYPES, TokenType
from auth.result import ErrorKind, Result
from auth.store import CredentialStore
from auth.tokens import encode_token

logger = logging.getLogger("synkrypt.sessions")


@dataclass(frozen=True)
class Session:
    token: str
    persisted: bool
    expires_at: datetime | None = None
    reused: bool = False


class SessionIssuer:
    def __init__(self, store: CredentialStore, lifetime_seconds: int) -> None:
        self.store = store
        self.lifetime = timedelta(seconds=lifetime_seconds)

    def create_session(
        self, user_id: str, session_type: TokenType, conn: Connection | None = None
    ) -> Result[Session]:
        """Return the user's active session of this type, minting one if none exists."""
        try:
            session_type = TokenType(session_type)
        except ValueError:
            return Result.fail(ErrorKind.VALIDATION_ERROR, f"Unknown session type: {session_type!r}")
        if session_type not in SESSION_TYPES:
            return Result.fail(ErrorKind.VALIDATION_ERROR, f"{session_type.value} is not a session type.")

        existing = self.store.find_valid_token(user_id, session_type, conn=conn)
        if existing.ok:
            token = existing.data
            return Result.success(Session(token=token.token_value, persisted=True, expires_at=token.expires_at, reused=True))
        if existing.error is not ErrorKind.NOT_FOUND:
            return existing

        now = datetime.now(timezone.utc)
        expires_at = None if session_type is TokenType.CLI_SESSION else now + self.lifetime
        token = encode_token(
            {
                "user_id": user_id,
                "session_type": session_type.value,
                "iat": int(now.timestamp()),
                "jti": secrets.token_hex(8),
            },
            expires_at=expires_at,
        )

        created = self.store.create_token(user_id, token, session_type, expires_at, conn=conn)
        if not created.ok:
            logger.error("Session persistence failed for user %s (%s)", user_id, session_type.value)
            if created.error is ErrorKind.NOT_FOUND:
                return Result.fail(ErrorKind.USER_NOT_FOUND, "User not found.")
            return Result.fail(ErrorKind.DEPENDENCY_FAILURE, "Failed to persist session.")

        logger.info("Issued %s for user %s", session_type.value, user_id)
        return Result.success(Session(token=token, persisted=True, expires_at=expires_at))

    def revoke(self, user_id: str, session_type: TokenType) -> Result[int]:
        """Delete every session of this type for the user (logout)."""
        session_type = TokenType(session_type)
        if session_type not in SESSION_TYPES:
            return Result.fail(ErrorKind.VALIDATION_ERROR, f"{session_type.value} is not a session type.")
        deleted = self.store.delete_tokens_by_type(user_id, session_type)
        if deleted.ok:
            logger.info("Revoked %d %s token(s) for user %s", deleted.data, session_type.value, user_id)
        return deleted
