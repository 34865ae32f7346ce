"""Shared fixtures for the fido-auth test suite.

- A temporary SQLite database per test (file-backed, so concurrent
  threads get real connections and real locking)
- A controllable UTC clock shared by every component under test
- A simulated identity provider whose answers the test scripts
"""

from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from sqlalchemy.engine import Engine

from fido_auth.security.auth.device_flow import DeviceFlowCoordinator
from fido_auth.security.auth.github import (
    DeviceCodeResponse,
    ProviderPollResult,
    ProviderPollStatus,
    ProviderUser,
)
from fido_auth.security.auth.tokens import TokenGenerator
from fido_auth.storage import SessionStore, UserDirectory, create_db_engine, init_schema
from fido_auth.telemetry.system_logger import reset_system_logger


class FakeClock:
    """Manually advanced aware-UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeIdentityProvider:
    """Scriptable stand-in for GitHub.

    Every device code answers authorization_pending until the test calls
    approve()/respond() for it.
    """

    verification_uri = "https://github.com/login/device"

    def __init__(self, *, expires_in: int = 900, interval: int = 5) -> None:
        self.expires_in = expires_in
        self.interval = interval
        self.answers: dict[str, ProviderPollResult] = {}
        self.profiles: dict[str, ProviderUser] = {}
        self.poll_calls: list[str] = []
        self.user_calls = 0
        self.error: Exception | None = None
        self._tokens = TokenGenerator()

    def request_device_code(self) -> DeviceCodeResponse:
        if self.error:
            raise self.error
        return DeviceCodeResponse(
            device_code=self._tokens.generate_device_code(),
            user_code=self._tokens.generate_user_code(),
            verification_uri=self.verification_uri,
            expires_in=self.expires_in,
            interval=self.interval,
        )

    def poll_token(self, device_code: str) -> ProviderPollResult:
        self.poll_calls.append(device_code)
        if self.error:
            raise self.error
        return self.answers.get(device_code, ProviderPollResult(status=ProviderPollStatus.PENDING))

    def get_user(self, access_token: str) -> ProviderUser:
        self.user_calls += 1
        return self.profiles[access_token]

    def approve(self, device_code: str, *, external_id: str = "1001", login: str = "octocat") -> None:
        access_token = f"gho_{external_id}_{device_code[:6]}"
        self.profiles[access_token] = ProviderUser(id=external_id, login=login)
        self.answers[device_code] = ProviderPollResult(
            status=ProviderPollStatus.APPROVED, access_token=access_token
        )

    def respond(self, device_code: str, status: ProviderPollStatus, interval: int | None = None) -> None:
        self.answers[device_code] = ProviderPollResult(status=status, interval=interval)


@pytest.fixture(autouse=True)
def _fresh_system_logger() -> Iterator[None]:
    """Each test starts with a logger that has no leftover file handler."""
    reset_system_logger()
    yield
    reset_system_logger()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "fido.db"


@pytest.fixture
def engine(db_path: Path) -> Iterator[Engine]:
    """File-backed SQLite engine with the schema created."""
    engine = create_db_engine(f"sqlite:///{db_path}")
    init_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def users(engine: Engine, clock: FakeClock) -> UserDirectory:
    return UserDirectory(engine, clock=clock)


@pytest.fixture
def sessions(engine: Engine, clock: FakeClock) -> SessionStore:
    return SessionStore(engine, ttl=timedelta(days=30), clock=clock)


@pytest.fixture
def provider() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture
def coordinator(
    engine: Engine,
    provider: FakeIdentityProvider,
    users: UserDirectory,
    sessions: SessionStore,
    clock: FakeClock,
) -> DeviceFlowCoordinator:
    return DeviceFlowCoordinator(
        engine,
        provider,
        users,
        sessions,
        clock=clock,
        retention=timedelta(seconds=300),
    )
