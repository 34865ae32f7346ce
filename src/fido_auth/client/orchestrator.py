"""Client-side authentication state machine.

    checking_existing -> authenticated | needs_login
    needs_login -> awaiting_device_code -> awaiting_approval
        -> authenticated | denied | timed_out | cancelled

A persisted session is reused when the server still accepts it. Otherwise
the device flow runs: the user code and URL are shown (and the browser
opened when possible), then the server is polled sequentially at the
interval it dictates. The token is written to disk only on approval.

Cancellation: the wait between polls is the only suspension point and is
done with cancel_event.wait(), so cancel() from another thread (or Ctrl-C)
ends polling immediately without side effects.
"""

from __future__ import annotations

__all__ = [
    "AuthOrchestrator",
    "AuthState",
    "LoginResult",
]

import threading
import time
import webbrowser
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from fido_auth.api.schemas import UserResponse
from fido_auth.constants import DEVICE_FLOW_SLOW_DOWN_INCREMENT_SECONDS, DEVICE_FLOW_TIMEOUT_SECONDS
from fido_auth.exceptions import (
    DeviceFlowCancelledError,
    DeviceFlowDeniedError,
    DeviceFlowExpiredError,
    DeviceFlowTimeoutError,
    ServerUnavailableError,
    SessionPersistenceError,
    SessionValidationError,
)
from fido_auth.security.auth.poll_status import PollStatus
from fido_auth.telemetry.system_logger import get_system_logger, token_prefix

from .api_client import APIClientError, FidoAPIClient
from .session_file import ClientSessionStore


class AuthState(str, Enum):
    """Where the orchestrator is in the login state machine."""

    CHECKING_EXISTING = "checking_existing"
    AUTHENTICATED = "authenticated"
    NEEDS_LOGIN = "needs_login"
    AWAITING_DEVICE_CODE = "awaiting_device_code"
    AWAITING_APPROVAL = "awaiting_approval"
    DENIED = "denied"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class LoginResult:
    """Outcome of a successful login.

    Attributes:
        session_token: The new session token.
        user: Authenticated user.
        persisted: Whether the token was written to the session file.
        persistence_error: Why it was not (login still succeeded).
        browser_opened: Whether the verification URL was opened automatically.
    """

    session_token: str
    user: UserResponse
    persisted: bool
    persistence_error: SessionPersistenceError | None = None
    browser_opened: bool = False


class AuthOrchestrator:
    """Drives "am I logged in, and if not, log me in" for one local profile.

    Args:
        api: Auth server client.
        session_store: Local session file.
        timeout: Overall wait for approval in seconds.
        open_browser: Try to open the verification URL.
        browser_opener: Function opening a URL (webbrowser.open by default).
        display_callback: Called with (user_code, verification_uri).
        poll_callback: Called before each poll (progress display).
        clock: Monotonic time source.
        cancel_event: Event whose wait() separates polls; set() cancels.
    """

    def __init__(
        self,
        api: FidoAPIClient,
        session_store: ClientSessionStore,
        *,
        timeout: float = DEVICE_FLOW_TIMEOUT_SECONDS,
        open_browser: bool = True,
        browser_opener: Callable[[str], bool] = webbrowser.open,
        display_callback: Callable[[str, str], None] | None = None,
        poll_callback: Callable[[], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self._api = api
        self._store = session_store
        self._timeout = timeout
        self._open_browser = open_browser
        self._browser_opener = browser_opener
        self._display = display_callback
        self._on_poll = poll_callback
        self._clock = clock
        self._cancel = cancel_event or threading.Event()
        self._state = AuthState.NEEDS_LOGIN
        self._logger = get_system_logger()

    @property
    def state(self) -> AuthState:
        return self._state

    def cancel(self) -> None:
        """Stop an in-progress login at its next wait."""
        self._cancel.set()

    # =========================================================================
    # Existing session
    # =========================================================================

    def check_existing(self) -> UserResponse | None:
        """Reuse the persisted session if the server still accepts it.

        Returns:
            The user, or None if a fresh login is needed.

        Raises:
            ServerUnavailableError: Server could not be asked. The session
                file is kept since the token may still be valid.
        """
        self._state = AuthState.CHECKING_EXISTING
        token = self._store.load()
        if token is None:
            self._state = AuthState.NEEDS_LOGIN
            return None

        try:
            user = self._api.validate(token)
        except SessionValidationError:
            self._logger.info(
                {
                    "event": "persisted_session_rejected",
                    "message": "Persisted session is no longer valid, login required",
                    "token_prefix": token_prefix(token),
                }
            )
            self._store.delete()
            self._state = AuthState.NEEDS_LOGIN
            return None
        except ServerUnavailableError:
            self._state = AuthState.NEEDS_LOGIN
            raise

        self._state = AuthState.AUTHENTICATED
        return user

    def ensure_authenticated(self) -> UserResponse:
        """Return the current user, running the device flow if needed."""
        user = self.check_existing()
        if user is not None:
            return user
        return self.login().user

    # =========================================================================
    # Device flow
    # =========================================================================

    def login(self) -> LoginResult:
        """Run the device flow to completion.

        Raises:
            DeviceFlowDeniedError: User denied the request.
            DeviceFlowExpiredError: Device code expired before approval.
            DeviceFlowTimeoutError: Overall timeout elapsed.
            DeviceFlowCancelledError: cancel() was called or Ctrl-C pressed.
            ServerUnavailableError: Server unreachable after retries.
        """
        self._cancel.clear()
        self._state = AuthState.AWAITING_DEVICE_CODE
        try:
            start = self._api.start_device_flow()
        except (ServerUnavailableError, APIClientError):
            self._state = AuthState.NEEDS_LOGIN
            raise

        self._state = AuthState.AWAITING_APPROVAL
        if self._display:
            self._display(start.user_code, start.verification_uri)
        browser_opened = self._open_browser and self._try_open_browser(start.verification_uri)

        try:
            return self._await_approval(
                start.device_code,
                interval=start.interval,
                deadline=self._clock() + min(self._timeout, start.expires_in),
                browser_opened=browser_opened,
            )
        except KeyboardInterrupt:
            self._state = AuthState.CANCELLED
            raise DeviceFlowCancelledError("Login cancelled") from None
        except (ServerUnavailableError, APIClientError):
            self._state = AuthState.NEEDS_LOGIN
            raise

    def _await_approval(
        self,
        device_code: str,
        *,
        interval: float,
        deadline: float,
        browser_opened: bool,
    ) -> LoginResult:
        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                self._state = AuthState.TIMED_OUT
                raise DeviceFlowTimeoutError(
                    f"Authentication timed out after {self._timeout:.0f} seconds. Please log in again."
                )

            if self._cancel.wait(min(interval, remaining)):
                self._state = AuthState.CANCELLED
                raise DeviceFlowCancelledError("Login cancelled")
            if self._clock() >= deadline:
                continue

            if self._on_poll:
                self._on_poll()
            response = self._api.poll_device_flow(device_code)

            if response.status is PollStatus.AUTHORIZATION_PENDING:
                continue
            if response.status is PollStatus.SLOW_DOWN:
                interval = max(interval + DEVICE_FLOW_SLOW_DOWN_INCREMENT_SECONDS, response.interval)
                continue
            if response.status is PollStatus.ACCESS_DENIED:
                self._state = AuthState.NEEDS_LOGIN
                raise DeviceFlowDeniedError("Authorization was denied.")
            if response.status is PollStatus.EXPIRED_TOKEN:
                self._state = AuthState.NEEDS_LOGIN
                raise DeviceFlowExpiredError("Device code expired. Please log in again.")

            if response.session_token is None or response.user is None:
                raise APIClientError("Approved poll response without a session")
            return self._complete(response.session_token, response.user, browser_opened)

    def _complete(self, token: str, user: UserResponse, browser_opened: bool) -> LoginResult:
        """Persist the approved token; a write failure does not undo the login."""
        error: SessionPersistenceError | None = None
        try:
            self._store.save(token)
        except SessionPersistenceError as e:
            error = e
            self._logger.error(
                {
                    "event": "session_file_save_failed",
                    "message": str(e),
                    "token_prefix": token_prefix(token),
                }
            )

        self._state = AuthState.AUTHENTICATED
        return LoginResult(
            session_token=token,
            user=user,
            persisted=error is None,
            persistence_error=error,
            browser_opened=browser_opened,
        )

    def _try_open_browser(self, url: str) -> bool:
        try:
            opened = bool(self._browser_opener(url))
        except (OSError, webbrowser.Error) as e:
            self._logger.warning(
                {
                    "event": "browser_open_failed",
                    "message": f"Could not open browser automatically: {e}",
                }
            )
            return False
        if not opened:
            self._logger.warning(
                {
                    "event": "browser_open_failed",
                    "message": "No browser available to open the verification URL",
                }
            )
        return opened

    # =========================================================================
    # Logout
    # =========================================================================

    def logout(self) -> bool:
        """End the session on the server (best effort) and remove the local file.

        Returns:
            True if the server confirmed the logout, False if there was no
            session or the server could not be reached.
        """
        token = self._store.load()
        server_confirmed = False
        if token is not None:
            try:
                self._api.logout(token)
                server_confirmed = True
            except (ServerUnavailableError, APIClientError) as e:
                self._logger.warning(
                    {
                        "event": "server_logout_failed",
                        "message": f"Server logout failed, removing local session only: {e}",
                        "token_prefix": token_prefix(token),
                    }
                )
        self._store.delete()
        self._state = AuthState.NEEDS_LOGIN
        return server_confirmed
