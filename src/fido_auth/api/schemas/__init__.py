"""API schemas (Pydantic models) for request/response validation."""

from __future__ import annotations

from fido_auth.api.schemas.auth import (
    DeviceFlowPollRequest,
    DeviceFlowPollResponse,
    DeviceFlowStartResponse,
    HealthResponse,
    LogoutResponse,
    UserResponse,
    ValidateResponse,
)

__all__ = [
    "DeviceFlowPollRequest",
    "DeviceFlowPollResponse",
    "DeviceFlowStartResponse",
    "HealthResponse",
    "LogoutResponse",
    "UserResponse",
    "ValidateResponse",
]
