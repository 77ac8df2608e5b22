"""
tests/test_dependencies.py -- Unit tests for the authentication gate and role guard.

authenticate() is exercised step by step, each test constructing the
smallest state that makes exactly that step fail.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from fastapi import HTTPException

from api.errors import unwrap
from auth.dependencies import _raise_for, authenticate, authorize, get_current_identity, require_admin
from auth.models import TokenType, UserIdentity
from auth.result import STATUS_BY_KIND, ErrorKind, Result
from auth.sessions import SessionIssuer
from auth.tokens import encode_token


def _claims(user_id: str, session_type: str = "cli-session") -> dict:
    return {"user_id": user_id, "session_type": session_type, "iat": int(datetime.now(timezone.utc).timestamp())}


class TestAuthenticate:
    def test_no_token_is_unauthorized(self, store) -> None:
        assert authenticate(store, None).error is ErrorKind.UNAUTHORIZED
        assert authenticate(store, "").error is ErrorKind.UNAUTHORIZED

    def test_garbage_token_is_invalid(self, store) -> None:
        assert authenticate(store, "not-a-jwt").error is ErrorKind.INVALID_TOKEN

    def test_non_session_claims_are_invalid(self, store, make_user) -> None:
        """A key setup token is a valid JWT but not a session."""
        user = make_user()
        token = encode_token({"user_id": user.id, "token_type": "key-gen"})
        store.create_token(user.id, token, TokenType.KEY_GEN, None)
        assert authenticate(store, token).error is ErrorKind.INVALID_TOKEN

    def test_unpersisted_token_is_invalid(self, store, make_user) -> None:
        """Correctly signed but never stored (or already revoked)."""
        user = make_user()
        token = encode_token(_claims(user.id))
        assert authenticate(store, token).error is ErrorKind.INVALID_TOKEN

    def test_invalidated_row_is_expired(self, store, make_user) -> None:
        user = make_user()
        token = encode_token(_claims(user.id))
        row = store.create_token(user.id, token, TokenType.CLI_SESSION, None).data
        store.update_token_validity(row.id, False)
        assert authenticate(store, token).error is ErrorKind.TOKEN_EXPIRED

    def test_row_past_expiry_is_expired(self, store, make_user) -> None:
        user = make_user()
        token = encode_token(_claims(user.id, "web-session"))
        store.create_token(user.id, token, TokenType.WEB_SESSION, datetime.now(timezone.utc) - timedelta(seconds=1))
        assert authenticate(store, token).error is ErrorKind.TOKEN_EXPIRED

    def test_jwt_exp_past_is_expired(self, store, make_user) -> None:
        user = make_user()
        past = datetime.now(timezone.utc) - timedelta(seconds=5)
        token = encode_token(_claims(user.id, "web-session"), expires_at=past)
        store.create_token(user.id, token, TokenType.WEB_SESSION, datetime.now(timezone.utc) + timedelta(hours=1))
        assert authenticate(store, token).error is ErrorKind.TOKEN_EXPIRED

    def test_missing_user_is_user_not_found(self, store, make_user) -> None:
        user = make_user()
        session = SessionIssuer(store, 3600).create_session(user.id, TokenType.CLI_SESSION).data
        gone = MagicMock(wraps=store)
        gone.get_user_by_id.return_value = Result.fail(ErrorKind.NOT_FOUND, "User not found.")
        assert authenticate(gone, session.token).error is ErrorKind.USER_NOT_FOUND

    def test_valid_session_resolves_identity(self, store, make_user) -> None:
        user = make_user(email="who@example.com", role="viewer")
        session = SessionIssuer(store, 3600).create_session(user.id, TokenType.WEB_SESSION).data
        result = authenticate(store, session.token)
        assert result.ok
        assert result.data == UserIdentity(id=user.id, email="who@example.com", role="viewer")

    def test_revoked_session_fails_after_logout(self, store, make_user) -> None:
        user = make_user()
        issuer = SessionIssuer(store, 3600)
        session = issuer.create_session(user.id, TokenType.CLI_SESSION).data
        assert authenticate(store, session.token).ok

        issuer.revoke(user.id, TokenType.CLI_SESSION)
        assert authenticate(store, session.token).error is ErrorKind.INVALID_TOKEN


class TestAuthorize:
    ADMIN = UserIdentity(id="1", email="a@example.com", role="admin")
    VIEWER = UserIdentity(id="2", email="v@example.com", role="viewer")

    def test_no_identity_is_unauthorized(self) -> None:
        assert authorize(None, ["admin"]).error is ErrorKind.UNAUTHORIZED

    def test_role_outside_set_is_forbidden(self) -> None:
        assert authorize(self.VIEWER, ["admin"]).error is ErrorKind.FORBIDDEN

    def test_role_inside_set_passes(self) -> None:
        result = authorize(self.ADMIN, ["admin"])
        assert result.ok
        assert result.data is self.ADMIN

    def test_empty_role_set_allows_any_identity(self) -> None:
        assert authorize(self.VIEWER).ok


class TestGateStatus:
    """The Depends() gate and api.errors.unwrap read one status table."""

    def _request(self, store, token: str | None = None) -> MagicMock:
        request = MagicMock()
        request.app.state.store = store
        request.cookies = {}
        request.headers = {"Authorization": f"Bearer {token}"} if token else {}
        return request

    def test_every_error_kind_has_a_status(self) -> None:
        assert set(STATUS_BY_KIND) == set(ErrorKind)

    @pytest.mark.parametrize("kind", [ErrorKind.FORBIDDEN, ErrorKind.DEPENDENCY_FAILURE, ErrorKind.VALIDATION_ERROR])
    def test_gate_and_unwrap_agree(self, kind: ErrorKind) -> None:
        failure = Result.fail(kind, "nope")
        with pytest.raises(HTTPException) as gate:
            _raise_for(failure)
        with pytest.raises(HTTPException) as boundary:
            unwrap(failure)
        assert gate.value.status_code == boundary.value.status_code == STATUS_BY_KIND[kind]
        assert gate.value.detail["error_type"] == kind.value

    def test_store_outage_is_503(self, store, make_user) -> None:
        user = make_user()
        session = SessionIssuer(store, 3600).create_session(user.id, TokenType.CLI_SESSION).data
        down = MagicMock(wraps=store)
        down.get_token_by_value.return_value = Result.fail(ErrorKind.DEPENDENCY_FAILURE, "Credential store is unavailable.")
        with pytest.raises(HTTPException) as exc:
            get_current_identity(self._request(down, session.token))
        assert exc.value.status_code == 503

    def test_viewer_on_admin_route_is_403(self, store, make_user) -> None:
        user = make_user(role="viewer")
        session = SessionIssuer(store, 3600).create_session(user.id, TokenType.CLI_SESSION).data
        with pytest.raises(HTTPException) as exc:
            require_admin(self._request(store, session.token))
        assert exc.value.status_code == 403
