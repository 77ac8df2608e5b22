"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. CredentialStore is the repository;
_row_to_user / _row_to_public_key / _row_to_token are the mappers. Service and
route code never touches SQL directly.

Every public method returns a Result. "Not found" is a failed Result with
ErrorKind.NOT_FOUND, never an exception. SQLAlchemy errors are logged and
wrapped as ErrorKind.DEPENDENCY_FAILURE by the _guarded decorator, so a store
outage surfaces to the caller with its kind preserved.

Transactions:
  Methods accept an optional conn. Without one, each call runs in its own
  engine.begin() scope. Multi-statement sequences open transaction() and pass
  the yielded connection to every call; raising (typically ResultError from
  Result.unwrap()) inside the scope rolls everything back.

Single-use tokens:
  update_token_validity(..., expected=True) issues
  UPDATE ... WHERE id = :id AND is_valid = 1 and reports whether a row
  changed. Two concurrent callers racing on the same nonce cannot both see
  True -- the database serializes the row update.

Security:
  All queries use bound parameters. No f-strings in SQL.

  token_value is indexed through its SHA-256 fingerprint but not UNIQUE:
  10-digit nonces may legitimately repeat once their earlier rows expired.
  get_token_by_value() returns the newest matching row.

Timestamps are stored as ISO 8601 UTC strings with fixed microsecond
precision so that string ordering matches chronological ordering.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import functools
import hashlib
import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    or_,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.models import PublicKey, Token, TokenType, User
from auth.result import ErrorKind, Result

logger = logging.getLogger("synkrypt.store")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'synkrypt_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text),  # NULL for CLI-only users
    Column("role", String(30), nullable=False),
    Column("organization_id", String(36)),
    Column("created_at", String(32), nullable=False),
)

_public_keys = Table(
    "public_keys",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id"), nullable=False, unique=True),
    Column("fingerprint", String(64), nullable=False, unique=True),
    Column("key_value", Text, nullable=False),
    Column("created_at", String(32), nullable=False),
)

_tokens = Table(
    "tokens",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id"), nullable=False, index=True),
    Column("token_value", Text, nullable=False),
    Column("type", String(20), nullable=False),
    Column("fingerprint", String(64), nullable=False, index=True),  # SHA-256 hex of token_value
    Column("is_valid", Integer, nullable=False, server_default="1"),
    Column("expires_at", String(32)),  # NULL = no expiry cap (cli-session)
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _configure_sqlite(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign key enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. foreign_keys=ON makes the "delete tokens before
    the user" ordering a database-enforced invariant rather than a convention.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _new_id() -> str:
    return str(uuid.uuid4())


def token_fingerprint(token_value: str) -> str:
    """Return the SHA-256 hex digest used to index a token without decoding it."""
    return hashlib.sha256(token_value.encode("utf-8")).hexdigest()


def _guarded(method):
    """Wrap a repository method so database errors become DEPENDENCY_FAILURE results."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except SQLAlchemyError as exc:
            logger.error("Credential store failure in %s: %s", method.__name__, exc.__class__.__name__)
            return Result.fail(ErrorKind.DEPENDENCY_FAILURE, "Credential store is unavailable.")

    return wrapper


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for User, PublicKey and Token entities.

    Usage:
        store = CredentialStore()
        created = store.create_user(User(email="a@example.com", role="admin", password_hash=h))
        user = store.get_user_by_email("a@example.com").data
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _configure_sqlite)
        _metadata.create_all(self.engine)

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Yield a connection whose statements commit together or not at all."""
        with self.engine.begin() as conn:
            yield conn

    @contextmanager
    def _scope(self, conn: Connection | None) -> Iterator[Connection]:
        if conn is not None:
            yield conn
            return
        with self.engine.begin() as own:
            yield own

    @_guarded
    def ping(self) -> Result[bool]:
        """Cheap liveness probe used by the health endpoint."""
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return Result.success(True)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    @_guarded
    def create_user(self, user: User, conn: Connection | None = None) -> Result[User]:
        """Insert a new user. ALREADY_EXISTS if the email is taken."""
        user_id = _new_id()
        created_at = _to_iso(_utcnow())
        try:
            with self._scope(conn) as c:
                c.execute(
                    _users.insert().values(
                        id=user_id,
                        email=user.email,
                        password_hash=user.password_hash,
                        role=user.role,
                        organization_id=user.organization_id,
                        created_at=created_at,
                    )
                )
        except IntegrityError:
            return Result.fail(ErrorKind.ALREADY_EXISTS, "A user with that email already exists.")
        return Result.success(
            User(
                id=user_id,
                email=user.email,
                role=user.role,
                password_hash=user.password_hash,
                organization_id=user.organization_id,
                created_at=created_at,
            )
        )

    @_guarded
    def get_user_by_id(self, user_id: str, conn: Connection | None = None) -> Result[User]:
        with self._scope(conn) as c:
            row = c.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        if row is None:
            return Result.fail(ErrorKind.NOT_FOUND, "User not found.")
        return Result.success(_row_to_user(row))

    @_guarded
    def get_user_by_email(self, email: str, conn: Connection | None = None) -> Result[User]:
        """Look up a user by exact email (case-sensitive)."""
        with self._scope(conn) as c:
            row = c.execute(_users.select().where(_users.c.email == email)).fetchone()
        if row is None:
            return Result.fail(ErrorKind.NOT_FOUND, "User not found.")
        return Result.success(_row_to_user(row))

    @_guarded
    def delete_user(self, user_id: str, conn: Connection | None = None) -> Result[bool]:
        """Delete a user together with its tokens and public key.

        Children are removed first; with foreign keys enforced the user row
        cannot be deleted while any token still references it.
        """
        with self._scope(conn) as c:
            c.execute(_tokens.delete().where(_tokens.c.user_id == user_id))
            c.execute(_public_keys.delete().where(_public_keys.c.user_id == user_id))
            result = c.execute(_users.delete().where(_users.c.id == user_id))
        if result.rowcount == 0:
            return Result.fail(ErrorKind.NOT_FOUND, "User not found.")
        return Result.success(True)

    # ------------------------------------------------------------------
    # Public keys
    # ------------------------------------------------------------------

    @_guarded
    def create_public_key(self, key: PublicKey, conn: Connection | None = None) -> Result[PublicKey]:
        """Insert a public key. ALREADY_EXISTS if the user or fingerprint already has one."""
        key_id = _new_id()
        created_at = _to_iso(_utcnow())
        try:
            with self._scope(conn) as c:
                c.execute(
                    _public_keys.insert().values(
                        id=key_id,
                        user_id=key.user_id,
                        fingerprint=key.fingerprint,
                        key_value=key.key_value,
                        created_at=created_at,
                    )
                )
        except IntegrityError:
            return Result.fail(ErrorKind.ALREADY_EXISTS, "A public key is already registered for this user or fingerprint.")
        return Result.success(
            PublicKey(
                id=key_id,
                user_id=key.user_id,
                fingerprint=key.fingerprint,
                key_value=key.key_value,
                created_at=created_at,
            )
        )

    @_guarded
    def get_public_key_by_fingerprint(self, fingerprint: str, conn: Connection | None = None) -> Result[PublicKey]:
        with self._scope(conn) as c:
            row = c.execute(_public_keys.select().where(_public_keys.c.fingerprint == fingerprint)).fetchone()
        if row is None:
            return Result.fail(ErrorKind.NOT_FOUND, "Public key not found.")
        return Result.success(_row_to_public_key(row))

    @_guarded
    def get_public_key_by_user_id(self, user_id: str, conn: Connection | None = None) -> Result[PublicKey]:
        with self._scope(conn) as c:
            row = c.execute(_public_keys.select().where(_public_keys.c.user_id == user_id)).fetchone()
        if row is None:
            return Result.fail(ErrorKind.NOT_FOUND, "Public key not found.")
        return Result.success(_row_to_public_key(row))

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    @_guarded
    def create_token(
        self,
        user_id: str,
        token_value: str,
        token_type: TokenType,
        expires_at: datetime | None,
        conn: Connection | None = None,
    ) -> Result[Token]:
        """Persist a valid token row. NOT_FOUND if the owning user does not exist."""
        token = Token(
            id=_new_id(),
            user_id=user_id,
            token_value=token_value,
            type=TokenType(token_type),
            fingerprint=token_fingerprint(token_value),
            is_valid=True,
            expires_at=expires_at,
            created_at=_utcnow(),
        )
        try:
            with self._scope(conn) as c:
                c.execute(
                    _tokens.insert().values(
                        id=token.id,
                        user_id=token.user_id,
                        token_value=token.token_value,
                        type=token.type.value,
                        fingerprint=token.fingerprint,
                        is_valid=1,
                        expires_at=_to_iso(expires_at) if expires_at is not None else None,
                        created_at=_to_iso(token.created_at),
                    )
                )
        except IntegrityError:
            return Result.fail(ErrorKind.NOT_FOUND, "User not found.")
        return Result.success(token)

    @_guarded
    def get_token_by_value(self, token_value: str, conn: Connection | None = None) -> Result[Token]:
        """Return the newest token row carrying this exact value."""
        with self._scope(conn) as c:
            row = c.execute(
                _tokens.select()
                .where((_tokens.c.fingerprint == token_fingerprint(token_value)) & (_tokens.c.token_value == token_value))
                .order_by(_tokens.c.created_at.desc())
                .limit(1)
            ).fetchone()
        if row is None:
            return Result.fail(ErrorKind.NOT_FOUND, "Token not found.")
        return Result.success(_row_to_token(row))

    @_guarded
    def get_token_by_id(self, token_id: str, conn: Connection | None = None) -> Result[Token]:
        with self._scope(conn) as c:
            row = c.execute(_tokens.select().where(_tokens.c.id == token_id)).fetchone()
        if row is None:
            return Result.fail(ErrorKind.NOT_FOUND, "Token not found.")
        return Result.success(_row_to_token(row))

    @_guarded
    def find_valid_token(
        self, user_id: str, token_type: TokenType, conn: Connection | None = None
    ) -> Result[Token]:
        """Return the newest valid, unexpired token of a type for a user.

        Expiry is evaluated here rather than in SQL so rows with a NULL
        expires_at (cli-session) and timestamped rows share one code path.
        """
        now = _utcnow()
        with self._scope(conn) as c:
            rows = c.execute(
                _tokens.select()
                .where(
                    (_tokens.c.user_id == user_id)
                    & (_tokens.c.type == TokenType(token_type).value)
                    & (_tokens.c.is_valid == 1)
                )
                .order_by(_tokens.c.created_at.desc())
            ).fetchall()
        for row in rows:
            token = _row_to_token(row)
            if token.is_usable(now):
                return Result.success(token)
        return Result.fail(ErrorKind.NOT_FOUND, "No active token.")

    @_guarded
    def update_token_validity(
        self,
        token_id: str,
        is_valid: bool,
        expected: bool | None = None,
        conn: Connection | None = None,
    ) -> Result[bool]:
        """Set is_valid on a token row.

        With expected set, the update only applies when the current value
        matches, and the returned data says whether this call changed the
        row. NOT_FOUND only when no row has this id.
        """
        stmt = _tokens.update().where(_tokens.c.id == token_id)
        if expected is not None:
            stmt = stmt.where(_tokens.c.is_valid == (1 if expected else 0))
        with self._scope(conn) as c:
            result = c.execute(stmt.values(is_valid=1 if is_valid else 0))
            if result.rowcount == 0:
                exists = c.execute(select(_tokens.c.id).where(_tokens.c.id == token_id)).first()
                if exists is None:
                    return Result.fail(ErrorKind.NOT_FOUND, "Token not found.")
        return Result.success(result.rowcount > 0)

    @_guarded
    def delete_tokens_by_type(
        self, user_id: str, token_type: TokenType, conn: Connection | None = None
    ) -> Result[int]:
        """Delete every token of a type for a user. Returns the number of rows removed."""
        with self._scope(conn) as c:
            result = c.execute(
                _tokens.delete().where((_tokens.c.user_id == user_id) & (_tokens.c.type == TokenType(token_type).value))
            )
        return Result.success(result.rowcount)

    @_guarded
    def purge_expired_tokens(self, now: datetime | None = None) -> Result[int]:
        """Delete expired rows and spent one-time tokens.

        Not called on any request path -- expired rows are rejected lazily.
        Intended for an out-of-band maintenance job.
        """
        cutoff = _to_iso(now or _utcnow())
        with self.engine.begin() as conn:
            result = conn.execute(
                _tokens.delete().where(
                    or_(
                        (_tokens.c.expires_at.is_not(None)) & (_tokens.c.expires_at < cutoff),
                        (_tokens.c.is_valid == 0)
                        & (_tokens.c.type.in_([TokenType.NONCE.value, TokenType.KEY_GEN.value])),
                    )
                )
            )
        return Result.success(result.rowcount)

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        role=row.role,
        organization_id=row.organization_id,
        created_at=row.created_at,
    )


def _row_to_public_key(row) -> PublicKey:
    return PublicKey(
        id=row.id,
        user_id=row.user_id,
        fingerprint=row.fingerprint,
        key_value=row.key_value,
        created_at=row.created_at,
    )


def _row_to_token(row) -> Token:
    return Token(
        id=row.id,
        user_id=row.user_id,
        token_value=row.token_value,
        type=TokenType(row.type),
        fingerprint=row.fingerprint,
        is_valid=bool(row.is_valid),
        expires_at=_from_iso(row.expires_at),
        created_at=_from_iso(row.created_at),
    )
