"""HTTP client for the auth server, used by the CLI and the orchestrator.

Transport-level failures (connection refused, timeouts) and 5xx answers are
retried with exponential backoff, independent of the device flow's own poll
interval. Retrying a poll is safe because the exchange is idempotent.
Once retries are exhausted the failure surfaces as ServerUnavailableError.
"""

from __future__ import annotations

__all__ = [
    "APIClientError",
    "FidoAPIClient",
    "PollResponse",
]

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx
from pydantic import ValidationError

from fido_auth.api.schemas import DeviceFlowPollResponse, DeviceFlowStartResponse, UserResponse
from fido_auth.constants import (
    DEFAULT_HTTP_TIMEOUT_SECONDS,
    SESSION_TOKEN_HEADER,
    TRANSPORT_RETRY_BACKOFF_MULTIPLIER,
    TRANSPORT_RETRY_INITIAL_DELAY,
    TRANSPORT_RETRY_MAX_ATTEMPTS,
)
from fido_auth.exceptions import FidoAuthError, ServerUnavailableError, SessionNotFoundError
from fido_auth.security.auth.poll_status import PollStatus

# Server statuses worth retrying
_RETRYABLE_STATUS_CODES = frozenset({502, 503, 504})


class APIClientError(FidoAuthError):
    """Server answered with an unexpected client error."""

    failure_type = "api_client_error"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        if status_code:
            super().__init__(f"API error ({status_code}): {message}")
        else:
            super().__init__(f"API error: {message}")
        self.status_code = status_code


@dataclass(frozen=True)
class PollResponse:
    """One poll answer as seen by the client.

    Attributes:
        status: Poll outcome.
        interval: Interval the server asked for (0 if not given).
        session_token: Session token (approved only).
        user: Authenticated user (approved only).
    """

    status: PollStatus
    interval: int = 0
    session_token: str | None = None
    user: UserResponse | None = None


def _error_detail(response: httpx.Response) -> dict[str, Any]:
    """Extract {"code", "message", "details"} from an error envelope."""
    try:
        detail = response.json().get("detail")
    except (ValueError, AttributeError):
        return {}
    return detail if isinstance(detail, dict) else {"message": str(detail)}


class FidoAPIClient:
    """Sync client for the auth server API.

    Args:
        base_url: Server base URL.
        timeout: Per-request timeout in seconds.
        http_client: Optional httpx client (for testing).
        max_attempts: Attempts per request for transport/5xx failures.
        sleep: Sleep function between retries (injectable for tests).
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
        http_client: httpx.Client | None = None,
        max_attempts: int = TRANSPORT_RETRY_MAX_ATTEMPTS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = http_client or httpx.Client(base_url=self._base_url, timeout=timeout)
        self._owns_client = http_client is None
        self._max_attempts = max(1, max_attempts)
        self._sleep = sleep

    @property
    def base_url(self) -> str:
        return self._base_url

    def __enter__(self) -> "FidoAPIClient":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def close(self) -> None:
        """Close HTTP client if we own it."""
        if self._owns_client:
            self._client.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send a request, retrying transport failures and 502/503/504.

        Raises:
            ServerUnavailableError: Server unreachable or failing after all attempts.
        """
        delay = TRANSPORT_RETRY_INITIAL_DELAY
        last_error: str = ""

        for attempt in range(1, self._max_attempts + 1):
            try:
                response = self._client.request(method, path, **kwargs)
            except httpx.TransportError as e:
                last_error = str(e) or type(e).__name__
            else:
                if response.status_code not in _RETRYABLE_STATUS_CODES:
                    return response
                detail = _error_detail(response)
                last_error = f"HTTP {response.status_code}: {detail.get('message', response.reason_phrase)}"

            if attempt < self._max_attempts:
                # Exponential backoff: 1s, 2s, 4s, ...
                self._sleep(delay)
                delay *= TRANSPORT_RETRY_BACKOFF_MULTIPLIER

        raise ServerUnavailableError(f"Auth server at {self._base_url} unavailable: {last_error}")

    @staticmethod
    def _raise_unexpected(response: httpx.Response) -> None:
        if response.status_code >= 500:
            raise ServerUnavailableError(f"Auth server error (HTTP {response.status_code})")
        detail = _error_detail(response)
        raise APIClientError(detail.get("message", response.reason_phrase), response.status_code)

    def start_device_flow(self) -> DeviceFlowStartResponse:
        """POST /auth/device/start."""
        response = self._request("POST", "/auth/device/start")
        if response.status_code != 200:
            self._raise_unexpected(response)
        try:
            return DeviceFlowStartResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise APIClientError(f"Malformed device flow start response: {e}") from e

    def poll_device_flow(self, device_code: str) -> PollResponse:
        """POST /auth/device/poll.

        Pending/slow_down/denied/expired are normal answers here, not errors.
        """
        response = self._request("POST", "/auth/device/poll", json={"device_code": device_code})

        if response.status_code == 200:
            try:
                body = DeviceFlowPollResponse.model_validate(response.json())
            except (ValueError, ValidationError) as e:
                raise APIClientError(f"Malformed device flow poll response: {e}") from e
            return PollResponse(status=PollStatus.APPROVED, session_token=body.session_token, user=body.user)

        if response.status_code == 400:
            detail = _error_detail(response)
            try:
                status = PollStatus(detail.get("code"))
            except ValueError:
                status = None
            if status is not None and status is not PollStatus.APPROVED:
                interval = int((detail.get("details") or {}).get("interval") or 0)
                return PollResponse(status=status, interval=interval)

        self._raise_unexpected(response)
        raise AssertionError("unreachable")

    def validate(self, token: str) -> UserResponse:
        """GET /auth/validate.

        Raises:
            SessionNotFoundError: The server rejected the token (401).
            ServerUnavailableError: The server could not be asked.
        """
        response = self._request("GET", "/auth/validate", headers={SESSION_TOKEN_HEADER: token})
        if response.status_code == 401:
            raise SessionNotFoundError("Session rejected by server")
        if response.status_code != 200:
            self._raise_unexpected(response)
        try:
            return UserResponse.model_validate(response.json()["user"])
        except (ValueError, KeyError, TypeError, ValidationError) as e:
            raise APIClientError(f"Malformed validate response: {e}") from e

    def logout(self, token: str) -> None:
        """POST /auth/logout. A 401 means the session is already gone."""
        response = self._request("POST", "/auth/logout", headers={SESSION_TOKEN_HEADER: token})
        if response.status_code not in (200, 401):
            self._raise_unexpected(response)
