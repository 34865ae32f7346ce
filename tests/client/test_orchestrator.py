"""Unit tests for the client login state machine.

The API client is a MagicMock and time is simulated: every wait between
polls advances a fake monotonic clock instead of sleeping.
"""

from __future__ import annotations

import threading
import webbrowser
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from fido_auth.api.schemas import DeviceFlowStartResponse, UserResponse
from fido_auth.client import AuthOrchestrator, AuthState, ClientSessionStore, FidoAPIClient, PollResponse
from fido_auth.client.api_client import APIClientError
from fido_auth.exceptions import (
    DeviceFlowCancelledError,
    DeviceFlowDeniedError,
    DeviceFlowExpiredError,
    DeviceFlowTimeoutError,
    ServerUnavailableError,
    SessionNotFoundError,
    SessionPersistenceError,
)
from fido_auth.security.auth.poll_status import PollStatus

TOKEN = "0d9c8b7a-6f5e-4d3c-8b2a-1f0e9d8c7b6a"
VERIFICATION_URI = "https://github.com/login/device"

USER = UserResponse(
    id="6b1d3c2a-0000-4000-8000-000000000001",
    external_id="1001",
    external_login="octocat",
    created_at=datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc),
)


class MonotonicClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class SteppingEvent:
    """Event stand-in whose wait() advances the fake clock.

    Optionally becomes set after a given number of waits.
    """

    def __init__(self, clock: MonotonicClock, set_after: int | None = None) -> None:
        self.clock = clock
        self.set_after = set_after
        self.waits: list[float] = []
        self._flag = False

    def wait(self, timeout: float) -> bool:
        self.waits.append(timeout)
        self.clock.now += timeout
        if self.set_after is not None and len(self.waits) >= self.set_after:
            self._flag = True
        return self._flag

    def set(self) -> None:
        self._flag = True

    def clear(self) -> None:
        self._flag = False

    def is_set(self) -> bool:
        return self._flag


def start_response(*, expires_in: int = 900, interval: int = 5) -> DeviceFlowStartResponse:
    return DeviceFlowStartResponse(
        device_code="dev-123",
        user_code="ABCD-1234",
        verification_uri=VERIFICATION_URI,
        expires_in=expires_in,
        interval=interval,
    )


PENDING = PollResponse(status=PollStatus.AUTHORIZATION_PENDING)
APPROVED = PollResponse(status=PollStatus.APPROVED, session_token=TOKEN, user=USER)


@pytest.fixture
def api() -> MagicMock:
    mock = MagicMock(spec=FidoAPIClient)
    mock.start_device_flow.return_value = start_response()
    mock.poll_device_flow.return_value = PENDING
    return mock


@pytest.fixture
def store(tmp_path: Path) -> ClientSessionStore:
    return ClientSessionStore(tmp_path / ".fido" / "session")


@pytest.fixture
def clock() -> MonotonicClock:
    return MonotonicClock()


@pytest.fixture
def event(clock: MonotonicClock) -> SteppingEvent:
    return SteppingEvent(clock)


@pytest.fixture
def browser() -> MagicMock:
    return MagicMock(return_value=True)


@pytest.fixture
def orchestrator(
    api: MagicMock,
    store: ClientSessionStore,
    clock: MonotonicClock,
    event: SteppingEvent,
    browser: MagicMock,
) -> AuthOrchestrator:
    return AuthOrchestrator(
        api,
        store,
        timeout=900,
        browser_opener=browser,
        clock=clock,
        cancel_event=event,  # type: ignore[arg-type]
    )


class TestCheckExisting:
    """Reuse of the persisted session."""

    def test_no_session_file(self, orchestrator: AuthOrchestrator, api: MagicMock) -> None:
        assert orchestrator.check_existing() is None
        assert orchestrator.state is AuthState.NEEDS_LOGIN
        api.validate.assert_not_called()

    def test_valid_session_is_reused(
        self, orchestrator: AuthOrchestrator, api: MagicMock, store: ClientSessionStore
    ) -> None:
        # Arrange
        store.save(TOKEN)
        api.validate.return_value = USER

        # Act
        user = orchestrator.check_existing()

        # Assert
        assert user == USER
        assert orchestrator.state is AuthState.AUTHENTICATED
        api.validate.assert_called_once_with(TOKEN)

    def test_rejected_session_is_deleted(
        self, orchestrator: AuthOrchestrator, api: MagicMock, store: ClientSessionStore
    ) -> None:
        store.save(TOKEN)
        api.validate.side_effect = SessionNotFoundError("Session rejected by server")

        assert orchestrator.check_existing() is None
        assert orchestrator.state is AuthState.NEEDS_LOGIN
        assert store.exists() is False

    def test_unreachable_server_keeps_session(
        self, orchestrator: AuthOrchestrator, api: MagicMock, store: ClientSessionStore
    ) -> None:
        """A network failure says nothing about the token, so it is kept."""
        store.save(TOKEN)
        api.validate.side_effect = ServerUnavailableError("connection refused")

        with pytest.raises(ServerUnavailableError):
            orchestrator.check_existing()

        assert store.load() == TOKEN
        assert orchestrator.state is AuthState.NEEDS_LOGIN

    def test_ensure_authenticated_skips_login(
        self, orchestrator: AuthOrchestrator, api: MagicMock, store: ClientSessionStore
    ) -> None:
        store.save(TOKEN)
        api.validate.return_value = USER

        assert orchestrator.ensure_authenticated() == USER
        api.start_device_flow.assert_not_called()


class TestLogin:
    """Device flow happy path."""

    def test_approval_persists_token(
        self,
        orchestrator: AuthOrchestrator,
        api: MagicMock,
        store: ClientSessionStore,
        browser: MagicMock,
        event: SteppingEvent,
    ) -> None:
        # Arrange
        api.poll_device_flow.side_effect = [PENDING, PENDING, APPROVED]

        # Act
        result = orchestrator.login()

        # Assert
        assert result.session_token == TOKEN
        assert result.user == USER
        assert result.persisted is True
        assert result.browser_opened is True
        assert store.load() == TOKEN
        assert orchestrator.state is AuthState.AUTHENTICATED
        assert event.waits == [5, 5, 5]
        browser.assert_called_once_with(VERIFICATION_URI)
        api.poll_device_flow.assert_called_with("dev-123")

    def test_callbacks(self, api: MagicMock, store: ClientSessionStore, clock: MonotonicClock, event: SteppingEvent) -> None:
        # Arrange
        shown: list[tuple[str, str]] = []
        polls: list[None] = []
        api.poll_device_flow.side_effect = [PENDING, APPROVED]
        orchestrator = AuthOrchestrator(
            api,
            store,
            open_browser=False,
            display_callback=lambda code, uri: shown.append((code, uri)),
            poll_callback=lambda: polls.append(None),
            clock=clock,
            cancel_event=event,  # type: ignore[arg-type]
        )

        # Act
        result = orchestrator.login()

        # Assert
        assert shown == [("ABCD-1234", VERIFICATION_URI)]
        assert len(polls) == 2
        assert result.browser_opened is False

    def test_ensure_authenticated_runs_login(
        self, orchestrator: AuthOrchestrator, api: MagicMock, store: ClientSessionStore
    ) -> None:
        api.poll_device_flow.side_effect = [APPROVED]

        assert orchestrator.ensure_authenticated() == USER
        assert store.load() == TOKEN

    def test_persistence_failure_still_succeeds(
        self, api: MagicMock, clock: MonotonicClock, event: SteppingEvent
    ) -> None:
        """The server session exists; only reuse on the next run is lost."""
        # Arrange
        store = MagicMock(spec=ClientSessionStore)
        store.save.side_effect = SessionPersistenceError("read-only file system")
        api.poll_device_flow.side_effect = [APPROVED]
        orchestrator = AuthOrchestrator(
            api, store, open_browser=False, clock=clock, cancel_event=event  # type: ignore[arg-type]
        )

        # Act
        result = orchestrator.login()

        # Assert
        assert result.persisted is False
        assert isinstance(result.persistence_error, SessionPersistenceError)
        assert result.session_token == TOKEN
        assert orchestrator.state is AuthState.AUTHENTICATED

    def test_browser_failure_is_not_fatal(
        self, orchestrator: AuthOrchestrator, api: MagicMock, browser: MagicMock
    ) -> None:
        browser.side_effect = webbrowser.Error("could not locate runnable browser")
        api.poll_device_flow.side_effect = [APPROVED]

        result = orchestrator.login()

        assert result.browser_opened is False
        assert result.persisted is True

    def test_no_browser_available(self, orchestrator: AuthOrchestrator, api: MagicMock, browser: MagicMock) -> None:
        browser.return_value = False
        api.poll_device_flow.side_effect = [APPROVED]

        assert orchestrator.login().browser_opened is False


class TestPolling:
    """Poll pacing and server answers."""

    def test_slow_down_adds_five_seconds(
        self, orchestrator: AuthOrchestrator, api: MagicMock, event: SteppingEvent
    ) -> None:
        api.poll_device_flow.side_effect = [PollResponse(status=PollStatus.SLOW_DOWN), PENDING, APPROVED]

        orchestrator.login()

        assert event.waits == [5, 10, 10]

    def test_slow_down_honours_server_interval(
        self, orchestrator: AuthOrchestrator, api: MagicMock, event: SteppingEvent
    ) -> None:
        api.poll_device_flow.side_effect = [PollResponse(status=PollStatus.SLOW_DOWN, interval=15), APPROVED]

        orchestrator.login()

        assert event.waits == [5, 15]

    def test_denied(self, orchestrator: AuthOrchestrator, api: MagicMock, store: ClientSessionStore) -> None:
        api.poll_device_flow.side_effect = [PENDING, PollResponse(status=PollStatus.ACCESS_DENIED)]

        with pytest.raises(DeviceFlowDeniedError):
            orchestrator.login()

        assert orchestrator.state is AuthState.NEEDS_LOGIN
        assert store.exists() is False

    def test_expired(self, orchestrator: AuthOrchestrator, api: MagicMock, store: ClientSessionStore) -> None:
        api.poll_device_flow.side_effect = [PollResponse(status=PollStatus.EXPIRED_TOKEN)]

        with pytest.raises(DeviceFlowExpiredError):
            orchestrator.login()

        assert orchestrator.state is AuthState.NEEDS_LOGIN
        assert store.exists() is False

    def test_timeout(self, api: MagicMock, store: ClientSessionStore, clock: MonotonicClock, event: SteppingEvent) -> None:
        """Last wait is cut to the deadline and no poll is sent after it."""
        # Arrange
        orchestrator = AuthOrchestrator(
            api, store, timeout=12, open_browser=False, clock=clock, cancel_event=event  # type: ignore[arg-type]
        )

        # Act
        with pytest.raises(DeviceFlowTimeoutError):
            orchestrator.login()

        # Assert
        assert event.waits == [5, 5, 2]
        assert api.poll_device_flow.call_count == 2
        assert orchestrator.state is AuthState.TIMED_OUT
        assert store.exists() is False

    def test_code_lifetime_caps_timeout(
        self, orchestrator: AuthOrchestrator, api: MagicMock, event: SteppingEvent
    ) -> None:
        api.start_device_flow.return_value = start_response(expires_in=6)

        with pytest.raises(DeviceFlowTimeoutError):
            orchestrator.login()

        assert event.waits == [5, 1]
        assert api.poll_device_flow.call_count == 1

    def test_server_unavailable_while_polling(
        self, orchestrator: AuthOrchestrator, api: MagicMock
    ) -> None:
        api.poll_device_flow.side_effect = ServerUnavailableError("connection refused")

        with pytest.raises(ServerUnavailableError):
            orchestrator.login()

        assert orchestrator.state is AuthState.NEEDS_LOGIN

    def test_start_failure(self, orchestrator: AuthOrchestrator, api: MagicMock) -> None:
        api.start_device_flow.side_effect = APIClientError("rate limited", 429)

        with pytest.raises(APIClientError):
            orchestrator.login()

        assert orchestrator.state is AuthState.NEEDS_LOGIN
        api.poll_device_flow.assert_not_called()

    def test_approved_without_session_raises(self, orchestrator: AuthOrchestrator, api: MagicMock) -> None:
        api.poll_device_flow.side_effect = [PollResponse(status=PollStatus.APPROVED)]

        with pytest.raises(APIClientError):
            orchestrator.login()


class TestCancellation:
    """Cancelling an in-progress login."""

    def test_event_set_during_wait(
        self, api: MagicMock, store: ClientSessionStore, clock: MonotonicClock
    ) -> None:
        # Arrange
        event = SteppingEvent(clock, set_after=2)
        orchestrator = AuthOrchestrator(
            api, store, open_browser=False, clock=clock, cancel_event=event  # type: ignore[arg-type]
        )

        # Act
        with pytest.raises(DeviceFlowCancelledError):
            orchestrator.login()

        # Assert
        assert orchestrator.state is AuthState.CANCELLED
        assert api.poll_device_flow.call_count == 1
        assert store.exists() is False

    def test_cancel_from_another_caller(self, api: MagicMock, store: ClientSessionStore) -> None:
        """cancel() wakes the real event wait without polling again."""
        # Arrange
        api.start_device_flow.return_value = start_response(interval=0)
        orchestrator = AuthOrchestrator(api, store, open_browser=False, cancel_event=threading.Event())

        def poll(device_code: str) -> PollResponse:
            orchestrator.cancel()
            return PENDING

        api.poll_device_flow.side_effect = poll

        # Act
        with pytest.raises(DeviceFlowCancelledError):
            orchestrator.login()

        # Assert
        assert api.poll_device_flow.call_count == 1
        assert orchestrator.state is AuthState.CANCELLED

    def test_keyboard_interrupt(self, orchestrator: AuthOrchestrator, api: MagicMock, store: ClientSessionStore) -> None:
        api.poll_device_flow.side_effect = KeyboardInterrupt

        with pytest.raises(DeviceFlowCancelledError):
            orchestrator.login()

        assert orchestrator.state is AuthState.CANCELLED
        assert store.exists() is False

    def test_stale_cancel_does_not_abort_new_login(
        self, orchestrator: AuthOrchestrator, api: MagicMock
    ) -> None:
        orchestrator.cancel()
        api.poll_device_flow.side_effect = [APPROVED]

        assert orchestrator.login().session_token == TOKEN


class TestLogout:
    """Tests for AuthOrchestrator.logout."""

    def test_server_and_local(self, orchestrator: AuthOrchestrator, api: MagicMock, store: ClientSessionStore) -> None:
        store.save(TOKEN)

        assert orchestrator.logout() is True

        api.logout.assert_called_once_with(TOKEN)
        assert store.exists() is False
        assert orchestrator.state is AuthState.NEEDS_LOGIN

    def test_unreachable_server_still_clears_local(
        self, orchestrator: AuthOrchestrator, api: MagicMock, store: ClientSessionStore
    ) -> None:
        store.save(TOKEN)
        api.logout.side_effect = ServerUnavailableError("connection refused")

        assert orchestrator.logout() is False

        assert store.exists() is False

    def test_without_session(self, orchestrator: AuthOrchestrator, api: MagicMock) -> None:
        assert orchestrator.logout() is False
        api.logout.assert_not_called()
