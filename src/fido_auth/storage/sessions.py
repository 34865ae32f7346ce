"""Server-side session store.

Durable mapping token → (user id, created at, expires at) backed by the
sessions table. Every operation is a single statement or a single short
transaction, so concurrent create/validate/delete/sweep calls need no lock
beyond what the database provides per row.

Validation results may be served from a small in-process ValidationCache.
A cached entry carries the session's own expiry, so a cache hit can never
extend a session past expires_at. Deleting a session through this store
invalidates its cache entry immediately.
"""

from __future__ import annotations

__all__ = [
    "Session",
    "SessionStore",
    "ValidationCache",
]

import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import sqlalchemy as sa
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from fido_auth.constants import (
    DEFAULT_SESSION_TTL_DAYS,
    DEFAULT_VALIDATION_CACHE_MAX_ENTRIES,
    DEFAULT_VALIDATION_CACHE_TTL_SECONDS,
    MAX_TOKEN_ATTEMPTS,
)
from fido_auth.exceptions import (
    SessionExpiredError,
    SessionNotFoundError,
    TokenCollisionError,
)
from fido_auth.security.auth.tokens import TokenGenerator
from fido_auth.storage.database import sessions_table, storage_errors, utcnow
from fido_auth.telemetry.system_logger import get_system_logger, token_prefix


@dataclass(frozen=True, slots=True)
class Session:
    """An issued session.

    Attributes:
        token: Opaque session token.
        user_id: Owner of the session.
        created_at: Issue time (UTC).
        expires_at: Expiry time (UTC), always after created_at.
    """

    token: str
    user_id: str
    created_at: datetime
    expires_at: datetime

    @classmethod
    def from_row(cls, row: sa.Row[Any]) -> "Session":
        return cls(
            token=row.token,
            user_id=row.user_id,
            created_at=row.created_at,
            expires_at=row.expires_at,
        )

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


# =============================================================================
# Validation Cache
# =============================================================================


class ValidationCache:
    """Bounded, TTL-limited cache of successful validations.

    Keyed by token; stores (user_id, session expires_at). Entries older
    than ttl_seconds are dropped on read; the least recently used entry is
    evicted once max_entries is reached. Thread-safe.

    A validation that read the database before an invalidate() of the same
    token must not re-populate the cache afterwards. Callers take
    read_stamp() before the read and pass it to put(); invalidate() leaves
    a tombstone newer than any earlier stamp, and put() drops entries whose
    stamp predates a tombstone. Tombstones expire after ttl_seconds (or
    when more than max_entries are held); the highest expired tombstone
    becomes a floor below which every stamp is refused.

    A ttl_seconds of 0 disables caching entirely.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_VALIDATION_CACHE_TTL_SECONDS,
        max_entries: int = DEFAULT_VALIDATION_CACHE_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds < 0:
            raise ValueError("ttl_seconds must be >= 0")
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, tuple[str, datetime, float]] = OrderedDict()
        # token -> (invalidation stamp, monotonic time), oldest first
        self._tombstones: OrderedDict[str, tuple[int, float]] = OrderedDict()
        self._stamp = 0
        self._floor = 0
        self._lock = threading.Lock()

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    @property
    def enabled(self) -> bool:
        return self._ttl > 0

    def read_stamp(self) -> int:
        """Stamp to take before reading a session row; pass it to put()."""
        with self._lock:
            return self._stamp

    def get(self, token: str) -> tuple[str, datetime] | None:
        """Return (user_id, expires_at) for a fresh entry, else None."""
        if not self.enabled:
            return None
        with self._lock:
            entry = self._entries.get(token)
            if entry is None:
                return None
            user_id, expires_at, cached_at = entry
            if self._clock() - cached_at >= self._ttl:
                del self._entries[token]
                return None
            self._entries.move_to_end(token)
            return user_id, expires_at

    def put(self, token: str, user_id: str, expires_at: datetime, *, read_stamp: int | None = None) -> None:
        """Cache a validation.

        With read_stamp, the entry is dropped if the token was invalidated
        after that stamp was taken.
        """
        if not self.enabled:
            return
        with self._lock:
            if read_stamp is not None:
                self._expire_tombstones()
                if read_stamp < self._floor:
                    return
                tombstone = self._tombstones.get(token)
                if tombstone is not None and tombstone[0] > read_stamp:
                    return
            self._entries[token] = (user_id, expires_at, self._clock())
            self._entries.move_to_end(token)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    def invalidate(self, token: str) -> None:
        with self._lock:
            self._entries.pop(token, None)
            if not self.enabled:
                return
            self._stamp += 1
            self._tombstones[token] = (self._stamp, self._clock())
            self._tombstones.move_to_end(token)
            self._expire_tombstones()

    def _expire_tombstones(self) -> None:
        # Caller holds the lock. Oldest first, so stamps pop in increasing order.
        now = self._clock()
        while self._tombstones:
            stamp, invalidated_at = next(iter(self._tombstones.values()))
            if now - invalidated_at < self._ttl and len(self._tombstones) <= self._max_entries:
                break
            self._tombstones.popitem(last=False)
            self._floor = max(self._floor, stamp)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# =============================================================================
# Session Store
# =============================================================================


class SessionStore:
    """Create, validate, delete and sweep sessions.

    Args:
        engine: SQLAlchemy engine with the schema initialized.
        ttl: Session lifetime.
        clock: Returns the current aware UTC time (injectable for tests).
        token_generator: Source of session tokens.
        cache: Validation cache. Defaults to a disabled cache.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        ttl: timedelta = timedelta(days=DEFAULT_SESSION_TTL_DAYS),
        clock: Callable[[], datetime] = utcnow,
        token_generator: TokenGenerator | None = None,
        cache: ValidationCache | None = None,
    ) -> None:
        if ttl <= timedelta(0):
            raise ValueError("Session lifetime must be positive")
        if cache is None:
            cache = ValidationCache(ttl_seconds=0)
        if cache.ttl_seconds >= ttl.total_seconds():
            raise ValueError("Validation cache TTL must be shorter than the session lifetime")

        self._engine = engine
        self._ttl = ttl
        self._clock = clock
        self._tokens = token_generator or TokenGenerator()
        self._cache = cache
        self._logger = get_system_logger()

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    @property
    def cache(self) -> ValidationCache:
        return self._cache

    def create(self, user_id: str, *, connection: sa.Connection | None = None) -> Session:
        """Issue a new session for a user.

        Args:
            user_id: Internal user id (must exist).
            connection: Join the caller's open transaction instead of starting
                one. The session only becomes visible when the caller commits.

        Returns:
            The persisted Session.

        Raises:
            TokenCollisionError: If MAX_TOKEN_ATTEMPTS tokens all collided.
            TransientStorageError: If storage is unavailable.
        """
        if connection is not None:
            with storage_errors("session create"):
                return self._insert_with_retry(connection, user_id)

        with storage_errors("session create"), self._engine.begin() as conn:
            return self._insert_with_retry(conn, user_id)

    def _insert_with_retry(self, conn: sa.Connection, user_id: str) -> Session:
        now = self._clock()
        for attempt in range(1, MAX_TOKEN_ATTEMPTS + 1):
            session = Session(
                token=self._tokens.generate(),
                user_id=user_id,
                created_at=now,
                expires_at=now + self._ttl,
            )
            try:
                # SAVEPOINT so a collision only rolls back this attempt
                with conn.begin_nested():
                    conn.execute(
                        sa.insert(sessions_table).values(
                            token=session.token,
                            user_id=session.user_id,
                            created_at=session.created_at,
                            expires_at=session.expires_at,
                        )
                    )
            except IntegrityError:
                if not self._token_exists(conn, session.token):
                    # Not a token collision (e.g. unknown user_id)
                    raise
                self._logger.warning(
                    {
                        "event": "token_collision_retry",
                        "message": f"Session token collision, retrying (attempt {attempt}/{MAX_TOKEN_ATTEMPTS})",
                        "attempt": attempt,
                    }
                )
                continue

            self._logger.info(
                {
                    "event": "session_created",
                    "message": f"Session created for user {user_id}",
                    "user_id": user_id,
                    "token_prefix": token_prefix(session.token),
                    "expires_at": session.expires_at.isoformat(),
                }
            )
            return session

        raise TokenCollisionError(
            f"Could not generate a unique session token after {MAX_TOKEN_ATTEMPTS} attempts"
        )

    @staticmethod
    def _token_exists(conn: sa.Connection, token: str) -> bool:
        return (
            conn.execute(sa.select(sessions_table.c.token).where(sessions_table.c.token == token)).first()
            is not None
        )

    def validate(self, token: str) -> str:
        """Resolve a token to its user id.

        Expiry is checked here on every call; it does not depend on whether
        the cleanup sweep has run yet.

        Args:
            token: Opaque session token.

        Returns:
            The session owner's user id.

        Raises:
            SessionNotFoundError: Token unknown or deleted.
            SessionExpiredError: Token past its expires_at.
            TransientStorageError: Storage unavailable. Callers must treat
                this as unauthenticated.
        """
        if not token:
            raise SessionNotFoundError("No session token provided")

        now = self._clock()
        cached = self._cache.get(token)
        if cached is not None:
            user_id, expires_at = cached
            if now > expires_at:
                self._cache.invalidate(token)
                raise SessionExpiredError("Session expired")
            return user_id

        read_stamp = self._cache.read_stamp()
        with storage_errors("session validate"), self._engine.connect() as conn:
            row = conn.execute(
                sa.select(sessions_table.c.user_id, sessions_table.c.expires_at).where(
                    sessions_table.c.token == token
                )
            ).first()

        if row is None:
            raise SessionNotFoundError("Session not found")
        if now > row.expires_at:
            raise SessionExpiredError("Session expired")

        self._cache.put(token, row.user_id, row.expires_at, read_stamp=read_stamp)
        return row.user_id

    def delete(self, token: str) -> None:
        """Delete a session. Deleting an unknown token is not an error."""
        self._cache.invalidate(token)
        with storage_errors("session delete"), self._engine.begin() as conn:
            result = conn.execute(sa.delete(sessions_table).where(sessions_table.c.token == token))
        # A validation that read the row before the commit may have cached it
        self._cache.invalidate(token)

        if result.rowcount:
            self._logger.info(
                {
                    "event": "session_deleted",
                    "message": "Session deleted",
                    "token_prefix": token_prefix(token),
                }
            )

    def sweep_expired(self) -> int:
        """Delete every session whose expiry has already passed.

        Sessions created while the sweep runs are untouched: the cutoff is
        taken once, and only rows with expires_at before it match.

        Returns:
            Number of sessions removed.
        """
        cutoff = self._clock()
        with storage_errors("session sweep"), self._engine.begin() as conn:
            result = conn.execute(sa.delete(sessions_table).where(sessions_table.c.expires_at < cutoff))
        return result.rowcount or 0

    def get(self, token: str) -> Session | None:
        """Fetch a session row without checking expiry."""
        with storage_errors("session lookup"), self._engine.connect() as conn:
            row = conn.execute(sa.select(sessions_table).where(sessions_table.c.token == token)).first()
        return Session.from_row(row) if row is not None else None

    def count(self) -> int:
        with storage_errors("session count"), self._engine.connect() as conn:
            return conn.execute(sa.select(sa.func.count()).select_from(sessions_table)).scalar_one()
