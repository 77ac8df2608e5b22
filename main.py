#!/usr/bin/env python3
"""
SynKrypt CLI -- Reference client for the SynKrypt auth service.

Logs in with an RSA key pair instead of a password: the server hands out a
short-lived nonce, the client signs it, the server returns a session token.

Usage:
  python main.py keygen
  python main.py register-key <ONE-TIME-TOKEN>
  python main.py login
  python main.py whoami
  python main.py logout

Files (under SYNKRYPT_HOME, default ~/.synkrypt):
  id_rsa            private key, PEM, mode 0600
  id_rsa.pub        public key, PEM
  credentials.json  {"server": ..., "token": ...}, mode 0600

Environment variables:
  SYNKRYPT_URL   Base URL of the auth service (default http://localhost:8000).
  SYNKRYPT_HOME  Directory for keys and credentials (default ~/.synkrypt).
"""

import argparse
import json
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import requests
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from auth.signatures import public_key_fingerprint, sign_payload

DEFAULT_URL = "http://localhost:8000"
PRIVATE_KEY_FILE = "id_rsa"
PUBLIC_KEY_FILE = "id_rsa.pub"
CREDENTIALS_FILE = "credentials.json"

_session = requests.Session()
_session.max_redirects = 3


class ClientError(Exception):
    """A failed call to the auth service, carrying its error_type."""

    def __init__(self, error_type: str, message: str) -> None:
        super().__init__(f"{error_type}: {message}")
        self.error_type = error_type
        self.message = message


# ---------------------------------------------------------------------------
# Local files
# ---------------------------------------------------------------------------


def _home() -> Path:
    return Path(os.environ.get("SYNKRYPT_HOME") or Path.home() / ".synkrypt")


def _write_private(path: Path, data: str) -> None:
    """Write a file readable only by the current user.

    os.open with 0o600 so the file is never briefly world-readable.
    """
    path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(data)
    os.chmod(path, 0o600)


def load_credentials(home: Path) -> Optional[dict[str, str]]:
    path = home / CREDENTIALS_FILE
    if not path.is_file():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None


def save_credentials(home: Path, server: str, token: str) -> Path:
    path = home / CREDENTIALS_FILE
    _write_private(path, json.dumps({"server": server, "token": token}))
    return path


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


def _call(method: str, url: str, token: Optional[str] = None, **kwargs: Any) -> dict[str, Any]:
    """Send one request and return the JSON body, or raise ClientError.

    Error bodies use the service envelope {success, error_type, message, errors}.
    """
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    try:
        resp = _session.request(method, url, headers=headers, timeout=10, **kwargs)
    except requests.RequestException as e:
        raise ClientError("connection_error", str(e)) from e
    try:
        body = resp.json() if resp.content else {}
    except ValueError:
        body = {}
    if not resp.ok:
        raise ClientError(body.get("error_type", f"http_{resp.status_code}"), body.get("message", resp.reason or ""))
    return body


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def generate_keypair(home: Path, overwrite: bool = False) -> str:
    """Create an RSA-2048 key pair under home. Returns the public key fingerprint."""
    private_path = home / PRIVATE_KEY_FILE
    if private_path.exists() and not overwrite:
        raise ClientError("already_exists", f"{private_path} already exists (use --force to replace it)")

    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")
    public_pem = (
        private_key.public_key()
        .public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        .decode("utf-8")
    )

    _write_private(private_path, private_pem)
    (home / PUBLIC_KEY_FILE).write_text(public_pem, encoding="utf-8")
    return public_key_fingerprint(public_pem)


def register_key(base_url: str, home: Path, one_time_token: str) -> str:
    public_pem = (home / PUBLIC_KEY_FILE).read_text(encoding="utf-8")
    body = _call(
        "POST",
        f"{base_url}/api/v1/keys/register",
        json={"oneTimeToken": one_time_token, "publicKey": public_pem},
    )
    return body["fingerprint"]


def login(base_url: str, home: Path) -> str:
    """Run the challenge-response login and store the session token.

    The signed object carries the nonce, the key fingerprint and a timestamp;
    the server only requires the nonce to be present and equal.
    """
    public_pem = (home / PUBLIC_KEY_FILE).read_text(encoding="utf-8")
    private_pem = (home / PRIVATE_KEY_FILE).read_text(encoding="utf-8")
    fingerprint = public_key_fingerprint(public_pem)

    nonce = _call("POST", f"{base_url}/api/v1/cli/request-nonce", json={"fingerprint": fingerprint})["nonce"]
    payload = {
        "nonce": nonce,
        "fingerprint": fingerprint,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    signature = sign_payload(payload, private_pem)
    token = _call(
        "POST",
        f"{base_url}/api/v1/cli/login",
        json={"nonce": nonce, "signedPayload": payload, "signature": signature},
    )["token"]
    save_credentials(home, base_url, token)
    return token


def whoami(base_url: str, home: Path) -> dict[str, Any]:
    creds = load_credentials(home)
    if not creds:
        raise ClientError("unauthorized", "Not logged in. Run: python main.py login")
    return _call("GET", f"{creds.get('server') or base_url}/api/v1/cli/account/me", token=creds["token"])


def logout(base_url: str, home: Path) -> int:
    """Revoke every CLI session server-side, then forget the local token."""
    creds = load_credentials(home)
    if not creds:
        return 0
    body = _call("POST", f"{creds.get('server') or base_url}/api/v1/cli/logout", token=creds["token"])
    (home / CREDENTIALS_FILE).unlink(missing_ok=True)
    return int(body.get("revoked", 0))


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="synkrypt",
        description="Key-based login client for the SynKrypt auth service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py keygen
  python main.py register-key eyJhbGciOi...
  python main.py login
  SYNKRYPT_URL=https://auth.example.com python main.py whoami
        """,
    )
    parser.add_argument(
        "--url",
        default=os.environ.get("SYNKRYPT_URL") or DEFAULT_URL,
        metavar="URL",
        help=f"Auth service base URL (default: $SYNKRYPT_URL or {DEFAULT_URL})",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    keygen_p = sub.add_parser("keygen", help="Generate an RSA key pair")
    keygen_p.add_argument("--force", action="store_true", help="Replace an existing key pair")

    register_p = sub.add_parser("register-key", help="Register the public key with a one-time setup token")
    register_p.add_argument("token", metavar="ONE-TIME-TOKEN", help="Key setup token issued by an admin")

    sub.add_parser("login", help="Log in with the private key")
    sub.add_parser("whoami", help="Show the logged-in identity")
    sub.add_parser("logout", help="Revoke CLI sessions and delete the local token")

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    base_url = args.url.rstrip("/")
    home = _home()

    try:
        if args.command == "keygen":
            fingerprint = generate_keypair(home, overwrite=args.force)
            print(f"  Key pair written to {home}")
            print(f"  Fingerprint: {fingerprint}")
        elif args.command == "register-key":
            fingerprint = register_key(base_url, home, args.token)
            print(f"  Public key registered. Fingerprint: {fingerprint}")
        elif args.command == "login":
            login(base_url, home)
            print("  Logged in. Token saved to credentials file.")
        elif args.command == "whoami":
            account = whoami(base_url, home)
            print(f"  {account['email']} ({account['role']})  id={account['id']}")
        elif args.command == "logout":
            revoked = logout(base_url, home)
            print(f"  Logged out. {revoked} session(s) revoked.")
    except ClientError as e:
        print(f"  [!] {e.message} ({e.error_type})", file=sys.stderr)
        return 1
    except FileNotFoundError as e:
        print(f"  [!] {e.filename} not found. Run: python main.py keygen", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
