"""
tests/conftest.py -- Shared test fixtures for the SynKrypt auth tests.

This module provides:
  - _make_test_store(): creates an isolated in-memory credential store
  - _patch_lifespan(): wires a test store into app.state, bypassing real startup
  - store: fresh CredentialStore per test, for unit tests
  - rsa_keypair / other_keypair: (private_pem, public_pem) RSA-2048 pairs
  - api_client: (client, store, admin_token, admin_id) for route tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The environment must be set before any api/auth/core import:
  DEBUG=true                lets get_settings() auto-generate SECRET_KEY
  ALLOWED_HOSTS             admits TestClient's "testserver" Host header
  RATE_LIMIT_ENABLED=false  many logins from one client address
  BCRYPT_ROUNDS=4           keeps password hashing fast
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set these before any auth/core import -- Settings is read once.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient

from api.main import app, wire_services
from auth.models import TokenType, User
from auth.sessions import SessionIssuer
from auth.store import CredentialStore
from auth.tokens import hash_password

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "Adm1n!pass"

# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _make_test_store(db_suffix: str) -> CredentialStore:
    """Create an isolated named shared-memory SQLite store.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   (and individual unit tests) never share state.
    """
    return CredentialStore(db_url=f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true")


def _patch_lifespan(store: CredentialStore):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-created test store into app.state through the same
    wire_services() the real lifespan uses.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_services(app, store)
        yield

    return test_lifespan


def _keypair() -> tuple[str, str]:
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    public_pem = (
        private_key.public_key()
        .public_bytes(encoding=serialization.Encoding.PEM, format=serialization.PublicFormat.SubjectPublicKeyInfo)
        .decode()
    )
    return private_pem, public_pem


# ---------------------------------------------------------------------------
# Unit-test fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[CredentialStore, None, None]:
    """A fresh, empty credential store per test."""
    s = _make_test_store(uuid.uuid4().hex)
    yield s
    s.close()


@pytest.fixture
def file_store(tmp_path) -> Generator[CredentialStore, None, None]:
    """A store on a real SQLite file, for tests where threads need separate connections."""
    s = CredentialStore(db_url=f"sqlite:///{tmp_path / 'credentials.db'}")
    yield s
    s.close()


@pytest.fixture
def make_user(store: CredentialStore):
    """Factory: insert a user into the per-test store and return it."""

    def _make(email: str = "user@example.com", role: str = "member", password: str | None = None) -> User:
        password_hash = hash_password(password) if password else None
        return store.create_user(User(email=email, role=role, password_hash=password_hash)).unwrap()

    return _make


@pytest.fixture(scope="session")
def rsa_keypair() -> tuple[str, str]:
    """(private_pem, public_pem). Generated once per session; RSA keygen is slow."""
    return _keypair()


@pytest.fixture(scope="session")
def other_keypair() -> tuple[str, str]:
    return _keypair()


# ---------------------------------------------------------------------------
# Module-scoped client -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def _module_client() -> Generator[tuple[TestClient, CredentialStore, str, str], None, None]:
    store = _make_test_store(f"api_{uuid.uuid4().hex[:8]}")

    admin = store.create_user(
        User(email=ADMIN_EMAIL, role="admin", password_hash=hash_password(ADMIN_PASSWORD))
    ).unwrap()
    token = SessionIssuer(store, lifetime_seconds=3600).create_session(admin.id, TokenType.WEB_SESSION).unwrap().token

    app.router.lifespan_context = _patch_lifespan(store)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, store, token, admin.id

    store.close()


@pytest.fixture
def api_client(_module_client) -> tuple[TestClient, CredentialStore, str, str]:
    """Yield (client, store, admin_token, admin_id) for route integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers but use an isolated in-memory store. The admin
    (ADMIN_EMAIL / ADMIN_PASSWORD) and a web-session token for it exist
    before the client starts.

    The cookie jar is cleared before every test: the access_token cookie
    takes priority over the Authorization header, so a cookie left behind by
    one test's login would silently change who the next test is.
    """
    client = _module_client[0]
    client.cookies.clear()
    return _module_client
