"""Device Authorization Flow coordinator (server side).

Drives the device authorization handshake for CLI clients:

1. start(): ask the identity provider for a device/user code pair and record
   a pending request.
2. poll(device_code): the client polls; the coordinator asks the provider on
   its behalf and, on approval, materializes the user and a session.

State machine per request: pending → approved | denied | expired, terminal
states are final.

Exchange is idempotent. Once a request is approved, every further poll
returns the same session token and no second session is minted. Within one
process a per-device-code lock serializes polls; across processes the
pending → approved transition is a compare-and-set in the same transaction
that inserts the session, so a losing poller rolls back its session and
returns the winner's.
"""

from __future__ import annotations

__all__ = [
    "DeviceFlowCoordinator",
    "PollResult",
    "PollStatus",
]

import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.engine import Engine

from fido_auth.constants import (
    DEFAULT_DEVICE_FLOW_RETENTION_SECONDS,
    DEVICE_FLOW_SLOW_DOWN_INCREMENT_SECONDS,
)
from fido_auth.security.auth.github import IdentityProvider, ProviderPollStatus
from fido_auth.security.auth.poll_status import PollStatus
from fido_auth.storage.database import storage_errors, utcnow
from fido_auth.storage.device_flows import DeviceFlowRequest, DeviceFlowStatus, DeviceFlowStore
from fido_auth.storage.sessions import SessionStore
from fido_auth.storage.users import User, UserDirectory
from fido_auth.telemetry.system_logger import get_system_logger, token_prefix

# Arrival jitter tolerated before a poll counts as too early
POLL_INTERVAL_TOLERANCE_SECONDS = 0.5


# =============================================================================
# Poll Results
# =============================================================================


@dataclass(frozen=True)
class PollResult:
    """Result of DeviceFlowCoordinator.poll().

    Attributes:
        status: Poll outcome.
        interval: Minimum seconds the client must wait before polling again.
        session_token: Minted session token (approved only).
        user: Authenticated user (approved only).
    """

    status: PollStatus
    interval: int
    session_token: str | None = None
    user: User | None = None


class _LostApprovalRace(Exception):
    """Another poller approved (or closed) the request first."""


class _KeyedLocks:
    """One lock per key, dropped again when nobody holds or waits on it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, tuple[threading.Lock, list[int]]] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock, users = self._locks.setdefault(key, (threading.Lock(), [0]))
            users[0] += 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                users[0] -= 1
                if users[0] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


# =============================================================================
# Coordinator
# =============================================================================


class DeviceFlowCoordinator:
    """Server-side driver of the device authorization handshake.

    Args:
        engine: Database engine shared with the user and session stores.
        provider: External identity provider.
        users: User directory.
        sessions: Session store.
        clock: Returns the current aware UTC time (injectable for tests).
        retention: How long terminal requests are kept for replay.
    """

    def __init__(
        self,
        engine: Engine,
        provider: IdentityProvider,
        users: UserDirectory,
        sessions: SessionStore,
        *,
        clock: Callable[[], datetime] = utcnow,
        retention: timedelta = timedelta(seconds=DEFAULT_DEVICE_FLOW_RETENTION_SECONDS),
    ) -> None:
        self._engine = engine
        self._provider = provider
        self._users = users
        self._sessions = sessions
        self._clock = clock
        self._retention = retention
        self._store = DeviceFlowStore(engine)
        self._locks = _KeyedLocks()
        self._logger = get_system_logger()

    @property
    def store(self) -> DeviceFlowStore:
        return self._store

    def start(self) -> DeviceFlowRequest:
        """Begin a device flow.

        Returns:
            The pending request (device code, user code, verification URI,
            expiry and poll interval).

        Raises:
            IdentityProviderError: If the provider is unreachable.
            TransientStorageError: If storage is unavailable.
        """
        code = self._provider.request_device_code()
        now = self._clock()
        request = DeviceFlowRequest(
            device_code=code.device_code,
            user_code=code.user_code,
            verification_uri=code.verification_uri,
            issued_at=now,
            expires_at=now + timedelta(seconds=code.expires_in),
            poll_interval=code.interval,
        )
        self._store.insert(request)

        self._logger.info(
            {
                "event": "device_flow_started",
                "message": f"Device flow started (user code {request.user_code})",
                "user_code": request.user_code,
                "expires_at": request.expires_at.isoformat(),
            }
        )
        return request

    def poll(self, device_code: str) -> PollResult:
        """Advance a device flow by one poll.

        Args:
            device_code: Code returned by start().

        Returns:
            PollResult. Approved results for the same device code always carry
            the same session token.

        Raises:
            IdentityProviderError: Provider unreachable; request stays pending.
            TransientStorageError: Storage unavailable.
        """
        with self._locks.hold(device_code):
            return self._poll_locked(device_code)

    def _poll_locked(self, device_code: str) -> PollResult:
        request = self._store.get(device_code)
        if request is None:
            return PollResult(status=PollStatus.EXPIRED_TOKEN, interval=0)

        if request.status.is_terminal:
            return self._replay(request)

        now = self._clock()
        if now > request.expires_at:
            return self._close(request, DeviceFlowStatus.EXPIRED, now)

        if request.last_polled_at is not None:
            elapsed = (now - request.last_polled_at).total_seconds()
            if elapsed + POLL_INTERVAL_TOLERANCE_SECONDS < request.poll_interval:
                return PollResult(status=PollStatus.SLOW_DOWN, interval=request.poll_interval)

        self._store.record_poll(device_code, now)
        answer = self._provider.poll_token(device_code)

        if answer.status is ProviderPollStatus.PENDING:
            return PollResult(status=PollStatus.AUTHORIZATION_PENDING, interval=request.poll_interval)

        if answer.status is ProviderPollStatus.SLOW_DOWN:
            interval = max(
                request.poll_interval + DEVICE_FLOW_SLOW_DOWN_INCREMENT_SECONDS,
                answer.interval or 0,
            )
            self._store.set_interval(device_code, interval)
            return PollResult(status=PollStatus.SLOW_DOWN, interval=interval)

        if answer.status is ProviderPollStatus.DENIED:
            return self._close(request, DeviceFlowStatus.DENIED, self._clock())

        if answer.status is ProviderPollStatus.EXPIRED:
            return self._close(request, DeviceFlowStatus.EXPIRED, self._clock())

        return self._approve(request, answer.access_token or "")

    def _approve(self, request: DeviceFlowRequest, access_token: str) -> PollResult:
        profile = self._provider.get_user(access_token)
        user = self._users.get_or_create(profile.id, profile.login)
        now = self._clock()

        try:
            with storage_errors("device flow approval"), self._engine.begin() as conn:
                # Session insert first: the transaction's first statement is a write
                session = self._sessions.create(user.id, connection=conn)
                won = self._store.transition(
                    request.device_code,
                    DeviceFlowStatus.APPROVED,
                    now,
                    connection=conn,
                    user_id=user.id,
                    session_token=session.token,
                )
                if not won:
                    raise _LostApprovalRace()
        except _LostApprovalRace:
            return self._replay_current(request.device_code)

        self._logger.info(
            {
                "event": "device_flow_approved",
                "message": f"Device flow approved for {user.external_login}",
                "user_id": user.id,
                "external_login": user.external_login,
                "token_prefix": token_prefix(session.token),
            }
        )
        return PollResult(
            status=PollStatus.APPROVED,
            interval=request.poll_interval,
            session_token=session.token,
            user=user,
        )

    def _close(self, request: DeviceFlowRequest, status: DeviceFlowStatus, now: datetime) -> PollResult:
        """Move a pending request to denied/expired and report it."""
        if not self._store.transition(request.device_code, status, now):
            return self._replay_current(request.device_code)

        self._logger.info(
            {
                "event": "device_flow_terminal",
                "message": f"Device flow {status.value} (user code {request.user_code})",
                "user_code": request.user_code,
                "status": status.value,
            }
        )
        return self._replay(
            DeviceFlowRequest(
                device_code=request.device_code,
                user_code=request.user_code,
                verification_uri=request.verification_uri,
                issued_at=request.issued_at,
                expires_at=request.expires_at,
                poll_interval=request.poll_interval,
                status=status,
                completed_at=now,
            )
        )

    def _replay_current(self, device_code: str) -> PollResult:
        current = self._store.get(device_code)
        if current is None:
            return PollResult(status=PollStatus.EXPIRED_TOKEN, interval=0)
        return self._replay(current)

    def _replay(self, request: DeviceFlowRequest) -> PollResult:
        """Answer a poll for a request that already reached a terminal state."""
        if request.status is DeviceFlowStatus.APPROVED:
            user = self._users.get(request.user_id) if request.user_id else None
            return PollResult(
                status=PollStatus.APPROVED,
                interval=request.poll_interval,
                session_token=request.session_token,
                user=user,
            )
        if request.status is DeviceFlowStatus.DENIED:
            return PollResult(status=PollStatus.ACCESS_DENIED, interval=request.poll_interval)
        if request.status is DeviceFlowStatus.EXPIRED:
            return PollResult(status=PollStatus.EXPIRED_TOKEN, interval=request.poll_interval)
        # Still pending (a concurrent poller rolled back); let the client retry
        return PollResult(status=PollStatus.AUTHORIZATION_PENDING, interval=request.poll_interval)

    def purge_stale(self, now: datetime | None = None) -> int:
        """Remove requests past their retention window.

        Returns:
            Number of device flow records removed.
        """
        return self._store.purge_stale(now or self._clock(), self._retention)
