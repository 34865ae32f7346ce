"""Authentication API endpoints.

- POST /auth/device/start - Start a device flow
- POST /auth/device/poll - Poll a device flow (mints the session on approval)
- GET /auth/validate - Resolve X-Session-Token to the caller
- POST /auth/logout - Delete the caller's session

Poll answers that are not an approval use 400 with the OAuth error code
(authorization_pending, slow_down, expired_token, access_denied) and carry
the interval the client must wait before polling again.

Routes mounted at: /auth
"""

from __future__ import annotations

__all__ = ["router"]

import asyncio

from fastapi import APIRouter

from fido_auth.api.deps import (
    DeviceFlowCoordinatorDep,
    SessionStoreDep,
    SessionTokenDep,
    SessionUserDep,
)
from fido_auth.api.errors import APIError, ErrorCode
from fido_auth.api.schemas import (
    DeviceFlowPollRequest,
    DeviceFlowPollResponse,
    DeviceFlowStartResponse,
    LogoutResponse,
    UserResponse,
    ValidateResponse,
)
from fido_auth.security.auth.poll_status import PollStatus

router = APIRouter()

_POLL_ERRORS: dict[PollStatus, tuple[ErrorCode, str]] = {
    PollStatus.AUTHORIZATION_PENDING: (
        ErrorCode.AUTHORIZATION_PENDING,
        "Waiting for the user to approve the request",
    ),
    PollStatus.SLOW_DOWN: (
        ErrorCode.SLOW_DOWN,
        "Polling too fast. Increase the polling interval.",
    ),
    PollStatus.EXPIRED_TOKEN: (
        ErrorCode.EXPIRED_TOKEN,
        "Device code expired or unknown. Start a new login.",
    ),
    PollStatus.ACCESS_DENIED: (
        ErrorCode.ACCESS_DENIED,
        "Authorization was denied.",
    ),
}


@router.post("/device/start")
async def start_device_flow(coordinator: DeviceFlowCoordinatorDep) -> DeviceFlowStartResponse:
    """Start device flow authentication.

    Returns the code the user enters at verification_uri, and the
    device_code the client polls /auth/device/poll with.
    """
    request = await asyncio.to_thread(coordinator.start)
    return DeviceFlowStartResponse(
        device_code=request.device_code,
        user_code=request.user_code,
        verification_uri=request.verification_uri,
        expires_in=request.expires_in(request.issued_at),
        interval=request.poll_interval,
    )


@router.post("/device/poll")
async def poll_device_flow(
    body: DeviceFlowPollRequest,
    coordinator: DeviceFlowCoordinatorDep,
) -> DeviceFlowPollResponse:
    """Poll for device flow completion.

    Call repeatedly, waiting the returned interval between calls, until the
    response is 200 (approved) or a terminal error. Repeating the poll after
    approval returns the same session token.
    """
    result = await asyncio.to_thread(coordinator.poll, body.device_code)

    if result.status is PollStatus.APPROVED:
        if result.session_token is None or result.user is None:
            raise APIError(
                status_code=500,
                code=ErrorCode.INTERNAL_ERROR,
                message="Approved device flow has no session",
            )
        return DeviceFlowPollResponse(
            session_token=result.session_token,
            user=UserResponse.from_user(result.user),
        )

    code, message = _POLL_ERRORS[result.status]
    raise APIError(
        status_code=400,
        code=code,
        message=message,
        details={"interval": result.interval},
    )


@router.get("/validate")
async def validate_session(user: SessionUserDep) -> ValidateResponse:
    """Return the user behind X-Session-Token (401 if invalid or expired)."""
    return ValidateResponse(user=UserResponse.from_user(user), valid=True)


@router.post("/logout")
async def logout(token: SessionTokenDep, sessions: SessionStoreDep) -> LogoutResponse:
    """Delete the caller's session. Logging out twice is not an error."""
    await asyncio.to_thread(sessions.delete, token)
    return LogoutResponse(message="Logged out")
