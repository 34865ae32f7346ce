"""Shared dependencies for API routes.

FastAPI convention: deps.py contains reusable request dependencies.
All route files should import dependencies from here rather than
defining their own helper functions.

Any collaborator route that needs "who is the caller" depends on
SessionUserDep; it resolves the X-Session-Token header to a User or
fails closed with 401 (unknown/expired token) or 503 (storage down).

Usage with Annotated (recommended):
    from fido_auth.api.deps import SessionUserDep

    @router.get("/posts")
    async def list_posts(user: SessionUserDep) -> ...:
        ...
"""

from __future__ import annotations

__all__ = [
    # Dependency functions
    "get_config",
    "get_device_flow_coordinator",
    "get_session_store",
    "get_user_directory",
    "require_session",
    "require_session_token",
    # Type aliases for Annotated pattern
    "ConfigDep",
    "DeviceFlowCoordinatorDep",
    "SessionStoreDep",
    "SessionTokenDep",
    "SessionUserDep",
    "UserDirectoryDep",
]

from typing import Annotated, Any, Callable

from fastapi import Depends, Header, Request

from fido_auth.api.errors import APIError, ErrorCode
from fido_auth.config import ServerConfig
from fido_auth.constants import SESSION_TOKEN_HEADER
from fido_auth.exceptions import SessionValidationError, TransientStorageError
from fido_auth.security.auth.device_flow import DeviceFlowCoordinator
from fido_auth.storage.sessions import SessionStore
from fido_auth.storage.users import User, UserDirectory


# =============================================================================
# Factory for State Getters
# =============================================================================


def _create_state_getter(
    attr_name: str,
    type_hint: str,
    error_detail: str,
) -> Callable[[Request], Any]:
    """Create a dependency function that retrieves a value from app.state.

    Args:
        attr_name: Attribute name on app.state (e.g., "sessions").
        type_hint: Type name for the docstring.
        error_detail: Error message for the 503 response.

    Returns:
        A dependency function compatible with FastAPI's Depends().
    """

    def getter(request: Request) -> Any:
        value = getattr(request.app.state, attr_name, None)
        if value is None:
            raise APIError(
                status_code=503,
                code=ErrorCode.SERVICE_UNAVAILABLE,
                message=error_detail,
            )
        return value

    getter.__name__ = f"get_{attr_name}"
    getter.__doc__ = f"Get {type_hint} from app.state.\n\nRaises APIError 503 if not available."
    return getter


# =============================================================================
# Dependency Functions (generated via factory)
# =============================================================================

get_config: Callable[[Request], ServerConfig] = _create_state_getter(
    "config",
    "ServerConfig",
    "Config not available. Server may still be starting.",
)

get_session_store: Callable[[Request], SessionStore] = _create_state_getter(
    "sessions",
    "SessionStore",
    "Session store not available. Server may still be starting.",
)

get_user_directory: Callable[[Request], UserDirectory] = _create_state_getter(
    "users",
    "UserDirectory",
    "User directory not available. Server may still be starting.",
)

get_device_flow_coordinator: Callable[[Request], DeviceFlowCoordinator] = _create_state_getter(
    "device_flow",
    "DeviceFlowCoordinator",
    "Device flow not available. Identity provider may not be configured.",
)


# =============================================================================
# Session Authentication
# =============================================================================


def require_session_token(
    x_session_token: Annotated[str | None, Header(alias=SESSION_TOKEN_HEADER)] = None,
) -> str:
    """Return the caller's session token or raise 401 if none was sent."""
    if not x_session_token:
        raise APIError(
            status_code=401,
            code=ErrorCode.AUTH_REQUIRED,
            message=f"Missing {SESSION_TOKEN_HEADER} header",
        )
    return x_session_token


def require_session(
    token: Annotated[str, Depends(require_session_token)],
    sessions: Annotated[SessionStore, Depends(get_session_store)],
    users: Annotated[UserDirectory, Depends(get_user_directory)],
) -> User:
    """Resolve the caller's session to a User, failing closed.

    Sync on purpose: FastAPI runs it in the threadpool, so database I/O
    never blocks the event loop.

    Raises:
        APIError: 401 if the token is unknown or expired, 503 if storage is
            unavailable (the request is never treated as authenticated).
    """
    try:
        user_id = sessions.validate(token)
        user = users.get(user_id)
    except SessionValidationError as e:
        raise APIError(
            status_code=401,
            code=ErrorCode.AUTH_REQUIRED,
            message="Invalid or expired session",
            details={"reason": e.failure_type},
        ) from e
    except TransientStorageError as e:
        raise APIError(
            status_code=503,
            code=ErrorCode.SERVICE_UNAVAILABLE,
            message="Session storage unavailable. Retry later.",
        ) from e

    if user is None:
        raise APIError(
            status_code=401,
            code=ErrorCode.AUTH_REQUIRED,
            message="Invalid or expired session",
        )
    return user


# =============================================================================
# Type Aliases for Annotated Pattern
# =============================================================================
# These allow clean route signatures:
#     async def endpoint(user: SessionUserDep) -> Response:
# Instead of:
#     async def endpoint(user: User = Depends(require_session)) -> Response:


ConfigDep = Annotated[ServerConfig, Depends(get_config)]
SessionStoreDep = Annotated[SessionStore, Depends(get_session_store)]
UserDirectoryDep = Annotated[UserDirectory, Depends(get_user_directory)]
DeviceFlowCoordinatorDep = Annotated[DeviceFlowCoordinator, Depends(get_device_flow_coordinator)]
SessionTokenDep = Annotated[str, Depends(require_session_token)]
SessionUserDep = Annotated[User, Depends(require_session)]
