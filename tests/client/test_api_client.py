"""Unit tests for the auth server HTTP client.

Uses httpx.MockTransport so no server is needed.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from fido_auth.client.api_client import APIClientError, FidoAPIClient
from fido_auth.exceptions import ServerUnavailableError, SessionNotFoundError
from fido_auth.security.auth.poll_status import PollStatus

BASE_URL = "http://testserver"

USER = {
    "id": "6b1d3c2a-0000-4000-8000-000000000001",
    "external_id": "1001",
    "external_login": "octocat",
    "created_at": "2025-01-15T12:00:00Z",
}


def make_client(handler: Callable[[httpx.Request], httpx.Response], **kwargs: Any) -> tuple[FidoAPIClient, list[float]]:
    sleeps: list[float] = []
    http_client = httpx.Client(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    client = FidoAPIClient(BASE_URL, http_client=http_client, sleep=sleeps.append, **kwargs)
    return client, sleeps


def oauth_error(code: str, **details: Any) -> httpx.Response:
    return httpx.Response(400, json={"detail": {"code": code, "message": code, "details": details or None}})


class TestStartDeviceFlow:
    """Tests for FidoAPIClient.start_device_flow."""

    def test_parses_response(self) -> None:
        # Arrange
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "POST"
            assert request.url.path == "/auth/device/start"
            return httpx.Response(
                200,
                json={
                    "device_code": "dev-123",
                    "user_code": "ABCD-1234",
                    "verification_uri": "https://github.com/login/device",
                    "expires_in": 900,
                    "interval": 5,
                },
            )

        client, _ = make_client(handler)

        # Act
        start = client.start_device_flow()

        # Assert
        assert start.device_code == "dev-123"
        assert start.user_code == "ABCD-1234"
        assert start.interval == 5

    def test_malformed_body_raises(self) -> None:
        client, _ = make_client(lambda request: httpx.Response(200, json={"device_code": "x"}))

        with pytest.raises(APIClientError, match="Malformed"):
            client.start_device_flow()

    def test_upstream_failure_is_server_unavailable(self) -> None:
        """A 502 from the server is retried then reported as unavailable."""
        client, sleeps = make_client(
            lambda request: httpx.Response(
                502, json={"detail": {"code": "UPSTREAM_ERROR", "message": "GitHub unavailable"}}
            )
        )

        with pytest.raises(ServerUnavailableError, match="GitHub unavailable"):
            client.start_device_flow()
        assert sleeps == [1.0, 2.0]


class TestRetry:
    """Transport failures and 5xx answers are retried with backoff."""

    def test_recovers_after_connect_error(self) -> None:
        # Arrange
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] == 1:
                raise httpx.ConnectError("connection refused")
            return httpx.Response(200, json={"user": USER, "valid": True})

        client, sleeps = make_client(handler)

        # Act
        user = client.validate("token-abcdefgh")

        # Assert
        assert user.external_login == "octocat"
        assert calls["n"] == 2
        assert sleeps == [1.0]

    def test_exhausted_retries_raise(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused")

        client, sleeps = make_client(handler, max_attempts=4)

        with pytest.raises(ServerUnavailableError, match="connection refused"):
            client.validate("token-abcdefgh")
        assert sleeps == [1.0, 2.0, 4.0]

    def test_503_then_success(self) -> None:
        responses = [httpx.Response(503), httpx.Response(200, json={"message": "Logged out"})]
        client, sleeps = make_client(lambda request: responses.pop(0))

        client.logout("token-abcdefgh")

        assert sleeps == [1.0]
        assert responses == []

    def test_500_is_not_retried(self) -> None:
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            return httpx.Response(500, json={"detail": {"code": "INTERNAL_ERROR", "message": "boom"}})

        client, sleeps = make_client(handler)

        with pytest.raises(ServerUnavailableError):
            client.validate("token-abcdefgh")
        assert calls["n"] == 1
        assert sleeps == []


class TestPollDeviceFlow:
    """Tests for FidoAPIClient.poll_device_flow."""

    def test_approved(self) -> None:
        # Arrange
        def handler(request: httpx.Request) -> httpx.Response:
            assert json.loads(request.content) == {"device_code": "dev-123"}
            return httpx.Response(200, json={"session_token": "tok-abcdefgh", "user": USER})

        client, _ = make_client(handler)

        # Act
        response = client.poll_device_flow("dev-123")

        # Assert
        assert response.status is PollStatus.APPROVED
        assert response.session_token == "tok-abcdefgh"
        assert response.user is not None
        assert response.user.external_id == "1001"

    @pytest.mark.parametrize(
        "code,status",
        [
            ("authorization_pending", PollStatus.AUTHORIZATION_PENDING),
            ("access_denied", PollStatus.ACCESS_DENIED),
            ("expired_token", PollStatus.EXPIRED_TOKEN),
        ],
    )
    def test_oauth_codes_are_answers(self, code: str, status: PollStatus) -> None:
        client, _ = make_client(lambda request: oauth_error(code))

        response = client.poll_device_flow("dev-123")

        assert response.status is status
        assert response.session_token is None

    def test_slow_down_carries_interval(self) -> None:
        client, _ = make_client(lambda request: oauth_error("slow_down", interval=10))

        response = client.poll_device_flow("dev-123")

        assert response.status is PollStatus.SLOW_DOWN
        assert response.interval == 10

    def test_unknown_400_raises(self) -> None:
        client, _ = make_client(
            lambda request: httpx.Response(
                400, json={"detail": {"code": "VALIDATION_ERROR", "message": "bad request"}}
            )
        )

        with pytest.raises(APIClientError) as exc_info:
            client.poll_device_flow("dev-123")
        assert exc_info.value.status_code == 400
        assert "bad request" in str(exc_info.value)

    def test_approved_code_in_error_body_is_rejected(self) -> None:
        """Approval only comes with a 200 and a session."""
        client, _ = make_client(lambda request: oauth_error("approved"))

        with pytest.raises(APIClientError):
            client.poll_device_flow("dev-123")


class TestValidate:
    """Tests for FidoAPIClient.validate."""

    def test_sends_session_header(self) -> None:
        seen: dict[str, str] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(request.headers)
            return httpx.Response(200, json={"user": USER, "valid": True})

        client, _ = make_client(handler)

        user = client.validate("tok-abcdefgh")

        assert seen["x-session-token"] == "tok-abcdefgh"
        assert user.id == USER["id"]

    def test_401_raises_session_not_found(self) -> None:
        client, _ = make_client(
            lambda request: httpx.Response(401, json={"detail": {"code": "AUTH_REQUIRED", "message": "invalid"}})
        )

        with pytest.raises(SessionNotFoundError):
            client.validate("tok-abcdefgh")

    def test_missing_user_raises(self) -> None:
        client, _ = make_client(lambda request: httpx.Response(200, json={"valid": True}))

        with pytest.raises(APIClientError, match="Malformed"):
            client.validate("tok-abcdefgh")


class TestLogout:
    """Tests for FidoAPIClient.logout."""

    def test_already_gone_is_success(self) -> None:
        client, _ = make_client(lambda request: httpx.Response(401))

        client.logout("tok-abcdefgh")

    def test_unexpected_status_raises(self) -> None:
        client, _ = make_client(lambda request: httpx.Response(404, json={"detail": "Not Found"}))

        with pytest.raises(APIClientError, match="Not Found"):
            client.logout("tok-abcdefgh")


class TestLifecycle:
    """Client ownership of the underlying httpx client."""

    def test_base_url_trailing_slash_stripped(self) -> None:
        client = FidoAPIClient("http://127.0.0.1:3000/")
        try:
            assert client.base_url == "http://127.0.0.1:3000"
        finally:
            client.close()

    def test_injected_client_is_not_closed(self) -> None:
        http_client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(200)))

        with FidoAPIClient(BASE_URL, http_client=http_client):
            pass

        assert http_client.is_closed is False
        http_client.close()
