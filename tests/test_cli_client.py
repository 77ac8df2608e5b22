"""
tests/test_cli_client.py -- Unit tests for the reference CLI client (main.py).

HTTP calls are mocked at the requests.Session level; key generation and
signing run for real so the signed login body is checked with the server's
own verify_signature().
"""

from __future__ import annotations

import json
import stat
from unittest.mock import MagicMock, patch

import pytest

import main
from auth.signatures import public_key_fingerprint, verify_signature


def _response(status: int, body: dict | None = None) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.ok = status < 400
    resp.reason = "OK" if status < 400 else "Error"
    resp.content = json.dumps(body).encode() if body is not None else b""
    resp.json.return_value = body
    return resp


@pytest.fixture
def home(tmp_path, monkeypatch):
    monkeypatch.setenv("SYNKRYPT_HOME", str(tmp_path))
    return tmp_path


class TestKeygen:
    def test_generates_private_and_public_key(self, home) -> None:
        fingerprint = main.generate_keypair(home)
        private_path = home / main.PRIVATE_KEY_FILE
        public_pem = (home / main.PUBLIC_KEY_FILE).read_text()

        assert stat.S_IMODE(private_path.stat().st_mode) == 0o600
        assert "PRIVATE KEY" in private_path.read_text()
        assert fingerprint == public_key_fingerprint(public_pem)

    def test_refuses_to_overwrite_without_force(self, home) -> None:
        main.generate_keypair(home)
        with pytest.raises(main.ClientError) as exc:
            main.generate_keypair(home)
        assert exc.value.error_type == "already_exists"


class TestLogin:
    def test_signs_nonce_and_stores_token(self, home) -> None:
        main.generate_keypair(home)
        public_pem = (home / main.PUBLIC_KEY_FILE).read_text()
        responses = [_response(200, {"nonce": "1234567890"}), _response(200, {"token": "cli-token"})]

        with patch.object(main._session, "request", side_effect=responses) as request:
            token = main.login("http://auth.test", home)

        assert token == "cli-token"
        nonce_call, login_call = request.call_args_list
        assert nonce_call.args == ("POST", "http://auth.test/api/v1/cli/request-nonce")
        assert nonce_call.kwargs["json"] == {"fingerprint": public_key_fingerprint(public_pem)}

        body = login_call.kwargs["json"]
        assert body["nonce"] == "1234567890"
        assert body["signedPayload"]["nonce"] == "1234567890"
        assert verify_signature(body["signedPayload"], body["signature"], public_pem).data is True

        creds_path = home / main.CREDENTIALS_FILE
        assert stat.S_IMODE(creds_path.stat().st_mode) == 0o600
        assert json.loads(creds_path.read_text()) == {"server": "http://auth.test", "token": "cli-token"}

    def test_error_envelope_becomes_client_error(self, home) -> None:
        main.generate_keypair(home)
        failure = _response(404, {"success": False, "error_type": "not_found", "message": "Public key not found."})
        with patch.object(main._session, "request", return_value=failure):
            with pytest.raises(main.ClientError) as exc:
                main.login("http://auth.test", home)
        assert exc.value.error_type == "not_found"
        assert not (home / main.CREDENTIALS_FILE).exists()


class TestSessionCommands:
    def test_whoami_sends_bearer_token(self, home) -> None:
        main.save_credentials(home, "http://auth.test", "cli-token")
        account = {"id": "u1", "email": "a@example.com", "role": "member", "organization_id": None}
        with patch.object(main._session, "request", return_value=_response(200, account)) as request:
            assert main.whoami("http://ignored", home) == account
        assert request.call_args.kwargs["headers"] == {"Authorization": "Bearer cli-token"}
        assert request.call_args.args[1] == "http://auth.test/api/v1/cli/account/me"

    def test_whoami_without_credentials(self, home) -> None:
        with pytest.raises(main.ClientError) as exc:
            main.whoami("http://auth.test", home)
        assert exc.value.error_type == "unauthorized"

    def test_logout_removes_credentials(self, home) -> None:
        main.save_credentials(home, "http://auth.test", "cli-token")
        with patch.object(main._session, "request", return_value=_response(200, {"message": "Logged out.", "revoked": 1})):
            assert main.logout("http://auth.test", home) == 1
        assert not (home / main.CREDENTIALS_FILE).exists()

    def test_main_returns_nonzero_on_error(self, home, capsys) -> None:
        assert main.main(["whoami"]) == 1
        assert "Not logged in" in capsys.readouterr().err

    def test_main_without_command_prints_help(self, home, capsys) -> None:
        assert main.main([]) == 1
        assert "usage" in capsys.readouterr().out.lower()
