"""
auth/accounts.py -- Login, registration and account lifecycle flows.

AccountService composes the store, the nonce engine and the session issuer
into the operations the HTTP routes expose:

  Web (password):
    register_admin()        -- bootstrap admin + first web session, one transaction
    login_with_password()   -- timing-equalized bcrypt check, then web session
    logout()                -- bulk revoke of one session type

  CLI (challenge-response):
    request_nonce()         -- public key fingerprint -> fresh nonce
    login_with_signature()  -- validate nonce, verify signature, burn nonce,
                               then cli session

  Accounts:
    create_cli_user()       -- admin-created identity without a password
    delete_account()        -- tokens, key, user removed in one transaction

Challenge-response ordering matters. The nonce is validated first (NOT_FOUND,
ALREADY_USED, EXPIRED), the signature is verified next, and the nonce is
invalidated only after the signature passed. A bad signature leaves the nonce
usable for a retry. The invalidation is conditional, so if two logins with the
same nonce both verify, only one gets past it; the other sees ALREADY_USED.

The signed payload must carry the nonce it answers ("nonce" key). Without that
binding a signature captured for one challenge could be replayed against
another.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from auth.models import TokenType, User, UserIdentity
from auth.nonces import NonceEngine
from auth.result import ErrorKind, Result, ResultError
from auth.sessions import Session, SessionIssuer
from auth.signatures import verify_signature
from auth.store import CredentialStore
from auth.tokens import authenticate_user, hash_password

logger = logging.getLogger("synkrypt.accounts")


@dataclass(frozen=True)
class LoginOutcome:
    identity: UserIdentity
    session: Session


class AccountService:
    def __init__(self, store: CredentialStore, nonces: NonceEngine, sessions: SessionIssuer) -> None:
        self.store = store
        self.nonces = nonces
        self.sessions = sessions

    # ------------------------------------------------------------------
    # Web (password)
    # ------------------------------------------------------------------

    def register_admin(self, email: str, password: str, organization_id: str | None = None) -> Result[LoginOutcome]:
        """Create an admin account and its first web session atomically.

        The password is hashed before anything touches the store; the
        plaintext is never persisted or logged.
        """
        try:
            password_hash = hash_password(password)
        except ValueError as exc:
            return Result.fail(ErrorKind.VALIDATION_ERROR, str(exc), [{"field": "password", "error": str(exc)}])
        new_user = User(
            email=email,
            role="admin",
            password_hash=password_hash,
            organization_id=organization_id,
        )
        try:
            with self.store.transaction() as conn:
                user = self.store.create_user(new_user, conn=conn).unwrap()
                session = self.sessions.create_session(user.id, TokenType.WEB_SESSION, conn=conn).unwrap()
        except ResultError as exc:
            if exc.result.error is not ErrorKind.ALREADY_EXISTS:
                logger.error("Registration failed: %s", exc.result.message)
            return exc.result
        except SQLAlchemyError:
            logger.exception("Registration transaction failed")
            return Result.fail(ErrorKind.DEPENDENCY_FAILURE, "User creation failed.")

        logger.info("Admin account %s registered", user.id)
        return Result.success(LoginOutcome(identity=UserIdentity.from_user(user), session=session))

    def login_with_password(self, email: str, password: str) -> Result[LoginOutcome]:
        authenticated = authenticate_user(self.store, email, password)
        if not authenticated.ok:
            if authenticated.error is ErrorKind.UNAUTHORIZED:
                logger.warning("Failed password login")
            return authenticated
        user = authenticated.data
        session = self.sessions.create_session(user.id, TokenType.WEB_SESSION)
        if not session.ok:
            return session
        logger.info("Password login for user %s", user.id)
        return Result.success(LoginOutcome(identity=UserIdentity.from_user(user), session=session.data))

    def logout(self, identity: UserIdentity, session_type: TokenType) -> Result[int]:
        return self.sessions.revoke(identity.id, session_type)

    # ------------------------------------------------------------------
    # CLI (challenge-response)
    # ------------------------------------------------------------------

    def request_nonce(self, fingerprint: str) -> Result[str]:
        """Issue a nonce for the user owning the public key with this fingerprint."""
        key = self.store.get_public_key_by_fingerprint(fingerprint)
        if not key.ok:
            return key
        return self.nonces.issue(key.data.user_id)

    def login_with_signature(self, nonce: str, signed_payload: Any, signature: str) -> Result[LoginOutcome]:
        granted = self.nonces.validate(nonce)
        if not granted.ok:
            return granted
        grant = granted.data

        if not isinstance(signed_payload, dict) or signed_payload.get("nonce") != nonce:
            return Result.fail(
                ErrorKind.VALIDATION_ERROR,
                "Signed payload must contain the issued nonce.",
                [{"field": "signed_payload.nonce", "error": "does not match nonce"}],
            )

        key = self.store.get_public_key_by_user_id(grant.user_id)
        if not key.ok:
            return key

        verified = verify_signature(signed_payload, signature, key.data.key_value)
        if not verified.ok:
            return verified
        if not verified.data:
            logger.warning("Signature verification failed for user %s", grant.user_id)
            return Result.fail(ErrorKind.UNAUTHORIZED, "Signature verification failed.")

        burned = self.nonces.invalidate(grant.nonce_id)
        if not burned.ok:
            return burned
        if not burned.data:
            logger.warning("Concurrent reuse of nonce for user %s rejected", grant.user_id)
            return Result.fail(ErrorKind.ALREADY_USED, "Nonce has already been used.")

        user = self.store.get_user_by_id(grant.user_id)
        if not user.ok:
            if user.error is ErrorKind.NOT_FOUND:
                return Result.fail(ErrorKind.USER_NOT_FOUND, "User not found.")
            return user

        session = self.sessions.create_session(grant.user_id, TokenType.CLI_SESSION)
        if not session.ok:
            return session
        logger.info("CLI login for user %s", grant.user_id)
        return Result.success(LoginOutcome(identity=UserIdentity.from_user(user.data), session=session.data))

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def create_cli_user(self, email: str, role: str, organization_id: str | None = None) -> Result[User]:
        """Create a password-less identity that can only use challenge-response login."""
        created = self.store.create_user(User(email=email, role=role, organization_id=organization_id))
        if created.ok:
            logger.info("CLI user %s created with role %s", created.data.id, role)
        return created

    def delete_account(self, user_id: str) -> Result[bool]:
        deleted = self.store.delete_user(user_id)
        if deleted.ok:
            logger.info("Account %s deleted", user_id)
        return deleted
