"""
tests/test_accounts.py -- Unit tests for AccountService flows below the HTTP layer.
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pytest

from auth.accounts import AccountService
from auth.models import PublicKey, TokenType, User
from auth.nonces import NonceEngine
from auth.result import ErrorKind, Result
from auth.sessions import SessionIssuer
from auth.signatures import sign_payload


@pytest.fixture
def accounts(store) -> AccountService:
    return AccountService(store, NonceEngine(store), SessionIssuer(store, 3600))


class TestRegisterAdmin:
    def test_register_returns_identity_and_web_session(self, accounts, store) -> None:
        outcome = accounts.register_admin("boss@example.com", "Str0ng!pw").data
        assert outcome.identity.role == "admin"
        row = store.get_token_by_value(outcome.session.token).data
        assert row.type is TokenType.WEB_SESSION
        assert store.get_user_by_email("boss@example.com").data.password_hash != "Str0ng!pw"

    def test_failed_session_rolls_back_user(self, accounts, store) -> None:
        """User and session are one transaction: no session, no user."""
        failure = Result.fail(ErrorKind.DEPENDENCY_FAILURE, "Failed to persist session.")
        with patch.object(accounts.sessions, "create_session", return_value=failure):
            result = accounts.register_admin("half@example.com", "Str0ng!pw")
        assert result.error is ErrorKind.DEPENDENCY_FAILURE
        assert store.get_user_by_email("half@example.com").error is ErrorKind.NOT_FOUND

    def test_password_over_bcrypt_limit_is_validation_error(self, accounts, store) -> None:
        result = accounts.register_admin("long@example.com", "aA1!" + "é" * 40)
        assert result.error is ErrorKind.VALIDATION_ERROR
        assert result.errors[0]["field"] == "password"
        assert store.get_user_by_email("long@example.com").error is ErrorKind.NOT_FOUND

    def test_duplicate_email(self, accounts) -> None:
        accounts.register_admin("dup@example.com", "Str0ng!pw")
        assert accounts.register_admin("dup@example.com", "Str0ng!pw").error is ErrorKind.ALREADY_EXISTS


class TestLoginWithSignature:
    def _enroll(self, store, make_user, public_pem):
        user = make_user(email="cli@example.com")
        store.create_public_key(PublicKey(user_id=user.id, fingerprint="fp1", key_value=public_pem))
        return user

    def test_concurrent_invalidation_loses(self, accounts, store, make_user, rsa_keypair) -> None:
        """If another login burned the nonce between validate and invalidate, this one fails."""
        private_pem, public_pem = rsa_keypair
        self._enroll(store, make_user, public_pem)
        nonce = accounts.request_nonce("fp1").data
        payload = {"nonce": nonce}

        with patch.object(accounts.nonces, "invalidate", return_value=Result.success(False)):
            result = accounts.login_with_signature(nonce, payload, sign_payload(payload, private_pem))
        assert result.error is ErrorKind.ALREADY_USED

    def test_success_returns_cli_session(self, accounts, store, make_user, rsa_keypair) -> None:
        private_pem, public_pem = rsa_keypair
        user = self._enroll(store, make_user, public_pem)
        nonce = accounts.request_nonce("fp1").data
        payload = {"nonce": nonce, "extra": [1, 2, 3]}

        outcome = accounts.login_with_signature(nonce, payload, sign_payload(payload, private_pem)).data
        assert outcome.identity.id == user.id
        assert store.get_token_by_value(outcome.session.token).data.type is TokenType.CLI_SESSION

    def test_non_object_payload_is_validation_error(self, accounts, store, make_user, rsa_keypair) -> None:
        private_pem, public_pem = rsa_keypair
        self._enroll(store, make_user, public_pem)
        nonce = accounts.request_nonce("fp1").data
        result = accounts.login_with_signature(nonce, [nonce], sign_payload([nonce], private_pem))
        assert result.error is ErrorKind.VALIDATION_ERROR

    def test_parallel_replays_yield_one_session(self, file_store, rsa_keypair) -> None:
        """The same signed login submitted from four threads at once succeeds once."""
        private_pem, public_pem = rsa_keypair
        user = file_store.create_user(User(email="cli@example.com", role="member")).unwrap()
        file_store.create_public_key(PublicKey(user_id=user.id, fingerprint="fp1", key_value=public_pem))
        service = AccountService(file_store, NonceEngine(file_store), SessionIssuer(file_store, 3600))
        nonce = service.request_nonce("fp1").data
        payload = {"nonce": nonce}
        signature = sign_payload(payload, private_pem)
        barrier = threading.Barrier(4)

        def login(_):
            barrier.wait(timeout=10)
            return service.login_with_signature(nonce, payload, signature)

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(login, range(4)))

        assert sum(r.ok for r in results) == 1
        assert {r.error for r in results if not r.ok} == {ErrorKind.ALREADY_USED}


def test_delete_account_missing_user(accounts) -> None:
    assert accounts.delete_account("ghost").error is ErrorKind.NOT_FOUND
