"""
auth/store.py -- SQLAlchemy Core persistence layer for users and session tokens.

Pattern: Repository + Data Mapper.
CredentialStore is the repository; _row_to_user / _row_to_token are the
mappers. Route and service code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Uniqueness of email, username and token value is enforced by UNIQUE
  constraints, not by read-then-write checks. Two concurrent registrations
  for the same email both reach INSERT; the database lets exactly one through
  and the other surfaces as IntegrityError, which is mapped to Conflict here.

Timestamps:
  Stored as naive UTC DATETIME (portable across SQLite and MySQL/TiDB).
  Everything above this module sees timezone-aware UTC datetimes; the
  conversion happens only in _to_db / _from_db.

Lifecycle:
  The constructor builds the engine but does not connect. The application
  calls ping() under a retry loop, then create_schema(), and close() on
  shutdown. There is no module-level engine.

Layer rule: no imports from api/ or cdc/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    event,
    or_,
    select,
    text,
)
from sqlalchemy.dialects import mysql
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.exceptions import Conflict
from auth.models import SessionToken, User

logger = logging.getLogger("helfy.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

# MySQL/TiDB DATETIME drops fractional seconds unless fsp is given.
_Timestamp = DateTime().with_variant(mysql.DATETIME(fsp=6), "mysql")

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("username", String(100), nullable=False, unique=True),
    Column("password_hash", String(255), nullable=False),
    Column("created_at", _Timestamp, nullable=False),
)

_tokens = Table(
    "user_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("token", String(255), nullable=False, unique=True),
    Column("expires_at", _Timestamp, nullable=False, index=True),
    Column("created_at", _Timestamp, nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block during writes.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_db(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for User and SessionToken rows.

    Usage:
        store = CredentialStore("sqlite:///./helfy.db")
        store.ping()
        store.create_schema()
        uid = store.create_user("a@x.com", "a", hash_password("secret1"))
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args, pool_pre_ping=True)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)

    def ping(self) -> None:
        """Round-trip a trivial query. Raises if the database is unreachable."""
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    def create_schema(self) -> None:
        """Create users and user_tokens if missing. Idempotent."""
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, email: str, username: str, password_hash: str) -> int:
        """Insert a new user and return its assigned database ID.

        Raises Conflict if the email or username already exists, including
        when a concurrent request inserted it between any caller-side check
        and this INSERT.
        """
        try:
            with self.engine.connect() as conn:
                result = conn.execute(
                    _users.insert().values(
                        email=email,
                        username=username,
                        password_hash=password_hash,
                        created_at=_to_db(_now()),
                    )
                )
                conn.commit()
        except IntegrityError as exc:
            raise Conflict("User already exists") from exc
        return result.inserted_primary_key[0]

    def get_user(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_user_by_email(self, email: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_user_by_identifier(self, identifier: str) -> User | None:
        """Look up a user whose email OR username equals identifier.

        If one account's username happens to equal another account's email,
        the lowest id wins. Registration makes that collision unlikely but
        does not forbid it.
        """
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select()
                .where(or_(_users.c.email == identifier, _users.c.username == identifier))
                .order_by(_users.c.id)
                .limit(1)
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def user_exists(self, email: str, username: str) -> bool:
        """Return True if either the email or the username is already taken."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_users.c.id).where(or_(_users.c.email == email, _users.c.username == username)).limit(1)
            ).fetchone()
        return row is not None

    def update_password_hash(self, user_id: int, password_hash: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(password_hash=password_hash))
            conn.commit()

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def create_token(self, user_id: int, token: str, expires_at: datetime) -> None:
        """Persist a session token. Raises Conflict if the value already exists."""
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    _tokens.insert().values(
                        user_id=user_id,
                        token=token,
                        expires_at=_to_db(expires_at),
                        created_at=_to_db(_now()),
                    )
                )
                conn.commit()
        except IntegrityError as exc:
            raise Conflict("Token already exists") from exc

    def find_valid_token(self, token: str, now: datetime) -> tuple[User, SessionToken] | None:
        """Return (owner, token) if the token exists and expires_at > now.

        A single JOIN, so the user and the token are read in one round trip.
        Expired rows are filtered in SQL and never reach the caller.
        """
        stmt = (
            select(
                _users,
                _tokens.c.token,
                _tokens.c.user_id.label("token_user_id"),
                _tokens.c.expires_at,
                _tokens.c.created_at.label("token_created_at"),
            )
            .select_from(_tokens.join(_users, _tokens.c.user_id == _users.c.id))
            .where((_tokens.c.token == token) & (_tokens.c.expires_at > _to_db(now)))
        )
        with self.engine.connect() as conn:
            row = conn.execute(stmt).fetchone()
        if row is None:
            return None
        return _row_to_user(row), _row_to_token(row)

    def delete_token(self, token: str) -> None:
        """Delete a token. Deleting an absent token is not an error."""
        with self.engine.connect() as conn:
            conn.execute(_tokens.delete().where(_tokens.c.token == token))
            conn.commit()

    def purge_expired_tokens(self, now: datetime) -> int:
        """Delete every token with expires_at <= now. Returns rows removed."""
        with self.engine.connect() as conn:
            result = conn.execute(_tokens.delete().where(_tokens.c.expires_at <= _to_db(now)))
            conn.commit()
        if result.rowcount:
            logger.info("Purged %d expired tokens", result.rowcount)
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        username=row.username,
        password_hash=row.password_hash,
        created_at=_from_db(row.created_at),
    )


def _row_to_token(row) -> SessionToken:
    return SessionToken(
        token=row.token,
        user_id=row.token_user_id,
        expires_at=_from_db(row.expires_at),
        created_at=_from_db(row.token_created_at),
    )
