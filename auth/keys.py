"""
auth/keys.py -- One-time key setup tokens and public key registration.

An admin mints a key-gen token for an existing user. The user (normally via
the CLI client) redeems it together with an RSA public key; redemption burns
the token and stores the key in a single transaction, after which the user
can log in with the challenge-response flow.

Token delivery (email) is outside this service -- the token is handed back
to the admin who requested it.

Redemption checks mirror the session gate: signature and claim type first,
then the revocation row, then validity and expiry. The token is burned with
the same conditional update used for nonces, so a token redeemed twice
concurrently registers at most one key.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import SQLAlchemyError

from auth.models import PublicKey, TokenType
from auth.result import ErrorKind, Result, ResultError
from auth.signatures import public_key_fingerprint
from auth.store import CredentialStore
from auth.tokens import claims_expired, decode_token, encode_token

logger = logging.getLogger("synkrypt.keys")


class KeySetupService:
    def __init__(self, store: CredentialStore, lifetime_seconds: int) -> None:
        self.store = store
        self.lifetime = timedelta(seconds=lifetime_seconds)

    def issue_setup_token(self, email: str) -> Result[str]:
        """Mint and persist a one-time key setup token for the user with this email."""
        found = self.store.get_user_by_email(email)
        if not found.ok:
            return found
        user = found.data

        now = datetime.now(timezone.utc)
        expires_at = now + self.lifetime
        token = encode_token(
            {
                "user_id": user.id,
                "email": user.email,
                "role": user.role,
                "token_type": TokenType.KEY_GEN.value,
                "iat": int(now.timestamp()),
                "jti": secrets.token_hex(8),
            },
            expires_at=expires_at,
        )
        created = self.store.create_token(user.id, token, TokenType.KEY_GEN, expires_at)
        if not created.ok:
            return Result.fail(ErrorKind.DEPENDENCY_FAILURE, "Failed to store key setup token.")
        logger.info("Key setup token issued for user %s", user.id)
        return Result.success(token)

    def register_public_key(self, one_time_token: str, public_key_pem: str) -> Result[PublicKey]:
        """Redeem a key setup token and register the caller's public key."""
        claims = decode_token(one_time_token)
        if claims is None or claims.get("token_type") != TokenType.KEY_GEN.value or "user_id" not in claims:
            return Result.fail(ErrorKind.INVALID_TOKEN, "Invalid key setup token.")

        found = self.store.get_token_by_value(one_time_token)
        if not found.ok:
            if found.error is ErrorKind.NOT_FOUND:
                return Result.fail(ErrorKind.INVALID_TOKEN, "Invalid key setup token.")
            return found
        record = found.data
        if record.type is not TokenType.KEY_GEN or record.user_id != claims["user_id"]:
            return Result.fail(ErrorKind.INVALID_TOKEN, "Invalid key setup token.")
        now = datetime.now(timezone.utc)
        if not record.is_usable(now) or claims_expired(claims, now):
            return Result.fail(ErrorKind.TOKEN_EXPIRED, "Key setup token is used or expired.")

        try:
            fingerprint = public_key_fingerprint(public_key_pem)
        except ValueError as exc:
            return Result.fail(ErrorKind.VERIFICATION_ERROR, f"Invalid public key: {exc}")

        try:
            with self.store.transaction() as conn:
                burned = self.store.update_token_validity(record.id, False, expected=True, conn=conn).unwrap()
                if not burned:
                    raise ResultError(Result.fail(ErrorKind.TOKEN_EXPIRED, "Key setup token is used or expired."))
                key = self.store.create_public_key(
                    PublicKey(user_id=record.user_id, fingerprint=fingerprint, key_value=public_key_pem.strip()),
                    conn=conn,
                ).unwrap()
        except ResultError as exc:
            return exc.result
        except SQLAlchemyError:
            logger.exception("Key registration transaction failed for user %s", record.user_id)
            return Result.fail(ErrorKind.DEPENDENCY_FAILURE, "Credential store is unavailable.")

        logger.info("Public key %s registered for user %s", fingerprint[:12], record.user_id)
        return Result.success(key)
