"""Relational schema and engine factory for the auth store.

Three tables back the subsystem:
- users: external identity → internal user (UNIQUE external_id)
- sessions: opaque token → user, with creation and expiry times
- device_flows: one row per device authorization request

SQLite notes:
    pysqlite's own transaction handling is disabled on connect and SQLAlchemy
    emits BEGIN itself, so SAVEPOINTs work (used for token-collision retries).
    WAL mode lets readers proceed while a writer commits, and busy_timeout
    makes concurrent writers wait instead of failing immediately. Write
    transactions issue their first write before any read so a deferred
    transaction never has to upgrade a stale read snapshot.
"""

from __future__ import annotations

__all__ = [
    "UTCDateTime",
    "create_db_engine",
    "device_flows_table",
    "init_schema",
    "metadata",
    "sessions_table",
    "storage_errors",
    "users_table",
    "utcnow",
]

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

import sqlalchemy as sa
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from fido_auth.exceptions import TransientStorageError

# Milliseconds a SQLite writer waits for a competing writer
SQLITE_BUSY_TIMEOUT_MS = 5000


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class UTCDateTime(sa.TypeDecorator):
    """Timestamp column stored as naive UTC, returned as aware UTC.

    SQLite has no timezone support; normalizing on the way in keeps
    comparisons in WHERE clauses correct regardless of the caller's tz.
    """

    impl = sa.DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("Naive datetime passed to a UTC column")
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


metadata = sa.MetaData()

users_table = sa.Table(
    "users",
    metadata,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("external_id", sa.String(64), nullable=False),
    sa.Column("external_login", sa.String(255), nullable=False),
    sa.Column("created_at", UTCDateTime(), nullable=False),
    sa.UniqueConstraint("external_id", name="uq_users_external_id"),
)

sessions_table = sa.Table(
    "sessions",
    metadata,
    sa.Column("token", sa.String(64), primary_key=True),
    sa.Column(
        "user_id",
        sa.String(36),
        sa.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    ),
    sa.Column("created_at", UTCDateTime(), nullable=False),
    sa.Column("expires_at", UTCDateTime(), nullable=False),
    sa.CheckConstraint("expires_at > created_at", name="ck_sessions_expiry_after_creation"),
    sa.Index("ix_sessions_expires_at", "expires_at"),
    sa.Index("ix_sessions_user_id", "user_id"),
)

device_flows_table = sa.Table(
    "device_flows",
    metadata,
    sa.Column("device_code", sa.String(255), primary_key=True),
    sa.Column("user_code", sa.String(32), nullable=False),
    sa.Column("verification_uri", sa.String(512), nullable=False),
    sa.Column("issued_at", UTCDateTime(), nullable=False),
    sa.Column("expires_at", UTCDateTime(), nullable=False),
    sa.Column("poll_interval", sa.Integer(), nullable=False),
    sa.Column("status", sa.String(16), nullable=False),
    sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id"), nullable=True),
    sa.Column("session_token", sa.String(64), nullable=True),
    sa.Column("last_polled_at", UTCDateTime(), nullable=True),
    sa.Column("completed_at", UTCDateTime(), nullable=True),
    sa.Index("ix_device_flows_status", "status"),
)


def _configure_sqlite(engine: Engine, *, in_memory: bool) -> None:
    """Install pysqlite connection/transaction hooks on the engine."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        # Hand transaction control to SQLAlchemy (enables SAVEPOINT)
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        try:
            if not in_memory:
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
            cursor.execute("PRAGMA foreign_keys=ON")
        finally:
            cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn: sa.Connection) -> None:
        conn.exec_driver_sql("BEGIN")


def create_db_engine(database_url: str, **engine_kwargs: Any) -> Engine:
    """Create a SQLAlchemy engine for the auth store.

    Args:
        database_url: SQLAlchemy URL (e.g. "sqlite:///fido.db").
        **engine_kwargs: Extra create_engine() arguments.

    Returns:
        Configured Engine. Schema is not created; call init_schema().
    """
    url = sa.make_url(database_url)
    is_sqlite = url.get_backend_name() == "sqlite"
    in_memory = is_sqlite and url.database in (None, "", ":memory:")

    if is_sqlite:
        # Pooled connections are handed between request threads
        engine_kwargs.setdefault("connect_args", {"check_same_thread": False})
    if in_memory:
        # One shared connection, otherwise every checkout sees an empty database
        engine_kwargs.setdefault("poolclass", sa.StaticPool)

    engine = sa.create_engine(url, **engine_kwargs)
    if engine.dialect.name == "sqlite":
        _configure_sqlite(engine, in_memory=in_memory)
    return engine


def init_schema(engine: Engine) -> None:
    """Create tables and indexes if they do not exist."""
    with storage_errors("schema initialization"):
        metadata.create_all(engine)


@contextmanager
def storage_errors(operation: str) -> Iterator[None]:
    """Convert driver failures into TransientStorageError.

    Integrity violations pass through unchanged: they carry meaning
    (duplicate token, duplicate external id) the caller acts on.

    Args:
        operation: Short description used in the error message.

    Raises:
        TransientStorageError: If the database is unreachable, locked or failing.
    """
    try:
        yield
    except IntegrityError:
        raise
    except (DBAPIError, PoolTimeoutError) as e:
        raise TransientStorageError(f"Storage unavailable during {operation}: {e}") from e
