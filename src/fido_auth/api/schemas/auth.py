"""Authentication API schemas."""

from __future__ import annotations

__all__ = [
    "DeviceFlowPollRequest",
    "DeviceFlowPollResponse",
    "DeviceFlowStartResponse",
    "HealthResponse",
    "LogoutResponse",
    "UserResponse",
    "ValidateResponse",
]

from datetime import datetime
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from fido_auth.storage.users import User


class UserResponse(BaseModel):
    """Internal user record as returned to clients."""

    id: str
    external_id: str
    external_login: str
    created_at: datetime

    @classmethod
    def from_user(cls, user: "User") -> "UserResponse":
        return cls(
            id=user.id,
            external_id=user.external_id,
            external_login=user.external_login,
            created_at=user.created_at,
        )


class DeviceFlowStartResponse(BaseModel):
    """Response when starting device flow."""

    device_code: str
    user_code: str
    verification_uri: str
    expires_in: int
    interval: int


class DeviceFlowPollRequest(BaseModel):
    """Body of a device flow poll."""

    device_code: str = Field(min_length=1, max_length=255)


class DeviceFlowPollResponse(BaseModel):
    """Response when a device flow poll is approved."""

    session_token: str
    user: UserResponse


class ValidateResponse(BaseModel):
    """Session validation response."""

    user: UserResponse
    valid: bool = True


class LogoutResponse(BaseModel):
    """Logout response."""

    message: str


class HealthResponse(BaseModel):
    """Liveness response."""

    status: str
