"""GitHub as the external identity provider (OAuth device flow, RFC 8628).

The auth server talks to GitHub on the client's behalf:
1. Request a device code (POST /login/device/code)
2. Poll the token endpoint with it (POST /login/oauth/access_token)
3. Fetch the profile with the access token (GET /user)

GitHub answers pending/slow_down/denied/expired with an "error" field in a
200 JSON body; other OAuth servers use 400. Both shapes are parsed.

The access token never leaves the server; only the internal session token
minted from it is returned to clients.
"""

from __future__ import annotations

__all__ = [
    "DeviceCodeResponse",
    "GitHubDeviceFlowClient",
    "IdentityProvider",
    "ProviderPollResult",
    "ProviderPollStatus",
    "ProviderUser",
]

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from fido_auth.constants import (
    DEVICE_CODE_GRANT_TYPE,
    DEVICE_FLOW_POLL_INTERVAL_SECONDS,
    OAUTH_CLIENT_TIMEOUT_SECONDS,
)
from fido_auth.exceptions import IdentityProviderError

if TYPE_CHECKING:
    from fido_auth.config import GitHubConfig


@dataclass(frozen=True)
class DeviceCodeResponse:
    """Response from the device authorization request.

    Attributes:
        device_code: Code used to poll for tokens (don't show to user).
        user_code: Code user enters in browser (e.g., "HDFC-LQRT").
        verification_uri: URL user opens to authenticate.
        expires_in: Seconds until codes expire.
        interval: Polling interval in seconds.
    """

    device_code: str
    user_code: str
    verification_uri: str
    expires_in: int
    interval: int

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> "DeviceCodeResponse":
        """Parse from the provider's JSON body."""
        return cls(
            device_code=data["device_code"],
            user_code=data["user_code"],
            verification_uri=data["verification_uri"],
            expires_in=int(data["expires_in"]),
            interval=int(data.get("interval") or DEVICE_FLOW_POLL_INTERVAL_SECONDS),
        )


class ProviderPollStatus(str, Enum):
    """Provider's answer to one token poll."""

    PENDING = "authorization_pending"
    SLOW_DOWN = "slow_down"
    DENIED = "access_denied"
    EXPIRED = "expired_token"
    APPROVED = "approved"


@dataclass(frozen=True)
class ProviderPollResult:
    """Result of a single token poll against the provider.

    Attributes:
        status: What the provider said.
        access_token: Provider access token if approved.
        interval: New minimum interval the provider asked for (slow_down only).
    """

    status: ProviderPollStatus
    access_token: str | None = None
    interval: int | None = None


@dataclass(frozen=True)
class ProviderUser:
    """External profile.

    Attributes:
        id: Stable provider identifier (GitHub numeric id as string).
        login: Provider login name.
        name: Display name, if set.
    """

    id: str
    login: str
    name: str | None = None


class IdentityProvider(Protocol):
    """External identity provider consumed by the device flow."""

    def request_device_code(self) -> DeviceCodeResponse: ...

    def poll_token(self, device_code: str) -> ProviderPollResult: ...

    def get_user(self, access_token: str) -> ProviderUser: ...


# OAuth error codes → poll status. incorrect_device_code means GitHub does not
# know the code any more; the flow has to restart just as if it had expired.
_POLL_ERRORS: dict[str, ProviderPollStatus] = {
    "authorization_pending": ProviderPollStatus.PENDING,
    "slow_down": ProviderPollStatus.SLOW_DOWN,
    "access_denied": ProviderPollStatus.DENIED,
    "expired_token": ProviderPollStatus.EXPIRED,
    "incorrect_device_code": ProviderPollStatus.EXPIRED,
}


def _json_body(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


class GitHubDeviceFlowClient:
    """GitHub device flow client.

    Usage:
        with GitHubDeviceFlowClient(config.github) as github:
            code = github.request_device_code()
            result = github.poll_token(code.device_code)
            if result.status is ProviderPollStatus.APPROVED:
                user = github.get_user(result.access_token)
    """

    def __init__(
        self,
        config: "GitHubConfig",
        http_client: httpx.Client | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: GitHub OAuth App settings.
            http_client: Optional httpx client (for testing).
        """
        self._config = config
        self._client = http_client or httpx.Client(timeout=OAUTH_CLIENT_TIMEOUT_SECONDS)
        self._owns_client = http_client is None

    def __enter__(self) -> "GitHubDeviceFlowClient":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def close(self) -> None:
        """Close HTTP client if we own it."""
        if self._owns_client:
            self._client.close()

    def _client_credentials(self) -> dict[str, str]:
        data = {"client_id": self._config.client_id}
        if self._config.client_secret:
            data["client_secret"] = self._config.client_secret
        return data

    def request_device_code(self) -> DeviceCodeResponse:
        """Request a device/user code pair.

        Raises:
            IdentityProviderError: If GitHub is unreachable or refuses.
        """
        try:
            response = self._client.post(
                self._config.device_code_url,
                data={"client_id": self._config.client_id, "scope": " ".join(self._config.scopes)},
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise IdentityProviderError(f"HTTP error requesting device code: {e}") from e

        data = _json_body(response)
        if response.is_error or "error" in data:
            error_msg = data.get("error_description") or data.get("error") or f"HTTP {response.status_code}"
            raise IdentityProviderError(f"Failed to request device code: {error_msg}")

        try:
            return DeviceCodeResponse.from_response(data)
        except (KeyError, TypeError, ValueError) as e:
            raise IdentityProviderError(f"Malformed device code response: missing {e}") from e

    def poll_token(self, device_code: str) -> ProviderPollResult:
        """Poll the token endpoint once.

        Raises:
            IdentityProviderError: On transport failure or an unexpected error code.
        """
        try:
            response = self._client.post(
                self._config.token_url,
                data={
                    **self._client_credentials(),
                    "device_code": device_code,
                    "grant_type": DEVICE_CODE_GRANT_TYPE,
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise IdentityProviderError(f"HTTP error polling for token: {e}") from e

        data = _json_body(response)

        access_token = data.get("access_token")
        if response.is_success and access_token:
            return ProviderPollResult(status=ProviderPollStatus.APPROVED, access_token=access_token)

        error = data.get("error", "")
        status = _POLL_ERRORS.get(error)
        if status is None:
            error_desc = data.get("error_description") or error or f"HTTP {response.status_code}"
            raise IdentityProviderError(f"Token request failed: {error_desc}")

        interval = data.get("interval") if status is ProviderPollStatus.SLOW_DOWN else None
        return ProviderPollResult(status=status, interval=int(interval) if interval else None)

    def get_user(self, access_token: str) -> ProviderUser:
        """Fetch the authenticated user's profile.

        Raises:
            IdentityProviderError: If the profile cannot be fetched or parsed.
        """
        try:
            response = self._client.get(
                self._config.user_url,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Accept": "application/vnd.github+json",
                },
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise IdentityProviderError(
                f"Failed to fetch user profile: HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise IdentityProviderError(f"HTTP error fetching user profile: {e}") from e

        data = _json_body(response)
        if data.get("id") is None or not data.get("login"):
            raise IdentityProviderError("User profile response is missing id or login")

        return ProviderUser(id=str(data["id"]), login=data["login"], name=data.get("name"))
