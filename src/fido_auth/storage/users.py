"""User directory: external identity → internal user record.

get_or_create is a single atomic upsert against the UNIQUE(external_id)
constraint followed by a select in the same transaction. Two concurrent
first logins for the same identity therefore resolve to the same row; there
is no check-then-insert window.
"""

from __future__ import annotations

__all__ = [
    "User",
    "UserDirectory",
]

import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine

from fido_auth.storage.database import storage_errors, users_table, utcnow


@dataclass(frozen=True, slots=True)
class User:
    """Internal user record.

    Attributes:
        id: Internal identifier (UUID string).
        external_id: Provider-scoped identifier (GitHub numeric id as string).
        external_login: Provider login at last sign-in.
        created_at: When the user first signed in.
    """

    id: str
    external_id: str
    external_login: str
    created_at: datetime

    @classmethod
    def from_row(cls, row: sa.Row[Any]) -> "User":
        return cls(
            id=row.id,
            external_id=row.external_id,
            external_login=row.external_login,
            created_at=row.created_at,
        )

    def to_dict(self) -> dict[str, str]:
        return {
            "id": self.id,
            "external_id": self.external_id,
            "external_login": self.external_login,
            "created_at": self.created_at.isoformat(),
        }


def _dialect_insert(engine: Engine) -> Callable[..., Any]:
    """Return the dialect insert() that supports ON CONFLICT."""
    if engine.dialect.name == "sqlite":
        return sqlite.insert
    if engine.dialect.name == "postgresql":
        return postgresql.insert
    raise ValueError(f"Unsupported database dialect for upsert: {engine.dialect.name}")


class UserDirectory:
    """Idempotent mapping from external identities to users."""

    def __init__(self, engine: Engine, clock: Callable[[], datetime] = utcnow) -> None:
        self._engine = engine
        self._clock = clock
        self._insert = _dialect_insert(engine)

    def get_or_create(self, external_id: str, external_login: str) -> User:
        """Return the user for an external identity, creating it on first sight.

        The stored login is refreshed to the provider's current value; id and
        created_at never change.

        Args:
            external_id: Provider-scoped identifier.
            external_login: Provider display login.

        Returns:
            The one User row for this external identity.

        Raises:
            TransientStorageError: If storage is unavailable.
        """
        stmt = self._insert(users_table).values(
            id=str(uuid.uuid4()),
            external_id=external_id,
            external_login=external_login,
            created_at=self._clock(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[users_table.c.external_id],
            set_={"external_login": stmt.excluded.external_login},
        )

        with storage_errors("user upsert"), self._engine.begin() as conn:
            conn.execute(stmt)
            row = conn.execute(
                sa.select(users_table).where(users_table.c.external_id == external_id)
            ).one()
        return User.from_row(row)

    def get(self, user_id: str) -> User | None:
        """Look up a user by internal id."""
        with storage_errors("user lookup"), self._engine.connect() as conn:
            row = conn.execute(sa.select(users_table).where(users_table.c.id == user_id)).first()
        return User.from_row(row) if row is not None else None

    def get_by_external_id(self, external_id: str) -> User | None:
        """Look up a user by provider identifier."""
        with storage_errors("user lookup"), self._engine.connect() as conn:
            row = conn.execute(
                sa.select(users_table).where(users_table.c.external_id == external_id)
            ).first()
        return User.from_row(row) if row is not None else None

    def count(self) -> int:
        with storage_errors("user count"), self._engine.connect() as conn:
            return conn.execute(sa.select(sa.func.count()).select_from(users_table)).scalar_one()
