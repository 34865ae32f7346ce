"""Persistence for device authorization requests.

Status is an explicit tagged value (pending/approved/denied/expired). The
only legal transitions are pending → terminal, enforced in SQL with
``UPDATE ... WHERE status = 'pending'`` so a record that already reached a
terminal state can never move again, even across processes.
"""

from __future__ import annotations

__all__ = [
    "DeviceFlowRequest",
    "DeviceFlowStatus",
    "DeviceFlowStore",
]

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

import sqlalchemy as sa
from sqlalchemy.engine import Engine

from fido_auth.storage.database import device_flows_table, storage_errors


class DeviceFlowStatus(str, Enum):
    """Lifecycle state of a device authorization request."""

    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not DeviceFlowStatus.PENDING


@dataclass(frozen=True, slots=True)
class DeviceFlowRequest:
    """One device authorization request.

    Attributes:
        device_code: Secret code the client polls with.
        user_code: Short code the user types at the verification URI.
        verification_uri: Where the user approves the request.
        issued_at: When the request was created.
        expires_at: After this instant every poll answers expired.
        poll_interval: Minimum seconds between polls.
        status: Current lifecycle state.
        user_id: Set once approved.
        session_token: Set once approved; replayed to repeated polls.
        last_polled_at: Last time the identity provider was asked.
        completed_at: When a terminal state was entered.
    """

    device_code: str
    user_code: str
    verification_uri: str
    issued_at: datetime
    expires_at: datetime
    poll_interval: int
    status: DeviceFlowStatus = DeviceFlowStatus.PENDING
    user_id: str | None = None
    session_token: str | None = None
    last_polled_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_row(cls, row: sa.Row[Any]) -> "DeviceFlowRequest":
        return cls(
            device_code=row.device_code,
            user_code=row.user_code,
            verification_uri=row.verification_uri,
            issued_at=row.issued_at,
            expires_at=row.expires_at,
            poll_interval=row.poll_interval,
            status=DeviceFlowStatus(row.status),
            user_id=row.user_id,
            session_token=row.session_token,
            last_polled_at=row.last_polled_at,
            completed_at=row.completed_at,
        )

    def expires_in(self, now: datetime) -> int:
        """Whole seconds left before expiry (never negative)."""
        return max(0, int((self.expires_at - now).total_seconds()))


class DeviceFlowStore:
    """CRUD and compare-and-set transitions for device_flows rows."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def insert(self, request: DeviceFlowRequest) -> None:
        with storage_errors("device flow insert"), self._engine.begin() as conn:
            conn.execute(
                sa.insert(device_flows_table).values(
                    device_code=request.device_code,
                    user_code=request.user_code,
                    verification_uri=request.verification_uri,
                    issued_at=request.issued_at,
                    expires_at=request.expires_at,
                    poll_interval=request.poll_interval,
                    status=request.status.value,
                    user_id=request.user_id,
                    session_token=request.session_token,
                    last_polled_at=request.last_polled_at,
                    completed_at=request.completed_at,
                )
            )

    def get(self, device_code: str) -> DeviceFlowRequest | None:
        with storage_errors("device flow lookup"), self._engine.connect() as conn:
            row = conn.execute(
                sa.select(device_flows_table).where(device_flows_table.c.device_code == device_code)
            ).first()
        return DeviceFlowRequest.from_row(row) if row is not None else None

    def record_poll(self, device_code: str, polled_at: datetime) -> None:
        """Remember when the provider was last asked about this request."""
        with storage_errors("device flow update"), self._engine.begin() as conn:
            conn.execute(
                sa.update(device_flows_table)
                .where(device_flows_table.c.device_code == device_code)
                .values(last_polled_at=polled_at)
            )

    def set_interval(self, device_code: str, interval: int) -> None:
        """Raise the minimum poll interval (after a provider slow_down)."""
        with storage_errors("device flow update"), self._engine.begin() as conn:
            conn.execute(
                sa.update(device_flows_table)
                .where(device_flows_table.c.device_code == device_code)
                .values(poll_interval=interval)
            )

    def transition(
        self,
        device_code: str,
        status: DeviceFlowStatus,
        completed_at: datetime,
        *,
        connection: sa.Connection | None = None,
        user_id: str | None = None,
        session_token: str | None = None,
    ) -> bool:
        """Compare-and-set pending → terminal.

        Args:
            device_code: Request to transition.
            status: Terminal status to enter.
            completed_at: Time of the transition.
            connection: Join the caller's transaction (approval path).
            user_id: Owner, for approved requests.
            session_token: Minted session, for approved requests.

        Returns:
            True if this call performed the transition; False if the request
            was already terminal (or is unknown).
        """
        if not status.is_terminal:
            raise ValueError("Can only transition to a terminal status")

        stmt = (
            sa.update(device_flows_table)
            .where(
                device_flows_table.c.device_code == device_code,
                device_flows_table.c.status == DeviceFlowStatus.PENDING.value,
            )
            .values(
                status=status.value,
                completed_at=completed_at,
                user_id=user_id,
                session_token=session_token,
            )
        )

        if connection is not None:
            with storage_errors("device flow transition"):
                return connection.execute(stmt).rowcount == 1

        with storage_errors("device flow transition"), self._engine.begin() as conn:
            return conn.execute(stmt).rowcount == 1

    def purge_stale(self, now: datetime, retention: timedelta) -> int:
        """Delete records no poll can legitimately need any more.

        Terminal records go once completed_at is older than the retention
        window; abandoned pending records once their expiry is.

        Returns:
            Number of records removed.
        """
        cutoff = now - retention
        table = device_flows_table
        stmt = sa.delete(table).where(
            sa.or_(
                sa.and_(table.c.status != DeviceFlowStatus.PENDING.value, table.c.completed_at < cutoff),
                sa.and_(table.c.status == DeviceFlowStatus.PENDING.value, table.c.expires_at < cutoff),
            )
        )
        with storage_errors("device flow purge"), self._engine.begin() as conn:
            return conn.execute(stmt).rowcount or 0

    def count(self) -> int:
        with storage_errors("device flow count"), self._engine.connect() as conn:
            return conn.execute(sa.select(sa.func.count()).select_from(device_flows_table)).scalar_one()
