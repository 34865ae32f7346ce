"""Custom exceptions for fido-auth.

This module contains the exceptions shared across the server and client.
Exceptions are organized into four categories:

Session Validation (fail closed, caller must re-authenticate):
    - SessionNotFoundError: Token is unknown (never issued, or deleted)
    - SessionExpiredError: Token exists but its expiry has passed

Transient Failures (caller may retry, never treated as authenticated):
    - TransientStorageError: Session/user storage unavailable
    - IdentityProviderError: External identity provider unreachable or failing
    - ServerUnavailableError: Client cannot reach the auth server

Fatal Failures (process exits with a dedicated code):
    - AuthenticationError: Cannot establish who the caller is
    - ConfigurationError: Configuration is invalid or incomplete

Device Flow (the user never approved the login):
    - DeviceFlowDeniedError, DeviceFlowExpiredError, DeviceFlowTimeoutError,
      DeviceFlowCancelledError

Usage:
    from fido_auth.exceptions import SessionExpiredError, TransientStorageError
"""

from __future__ import annotations

__all__ = [
    "AuthenticationError",
    "ConfigurationError",
    "DeviceFlowCancelledError",
    "DeviceFlowDeniedError",
    "DeviceFlowError",
    "DeviceFlowExpiredError",
    "DeviceFlowTimeoutError",
    "FidoAuthError",
    "IdentityProviderError",
    "ServerUnavailableError",
    "SessionExpiredError",
    "SessionNotFoundError",
    "SessionPersistenceError",
    "SessionValidationError",
    "TokenCollisionError",
    "TransientStorageError",
]


class FidoAuthError(Exception):
    """Base exception for all fido-auth failures.

    Attributes:
        exit_code: Process exit code when this error terminates the CLI.
        failure_type: Category string for logging.
    """

    exit_code: int = 1
    failure_type: str = "unknown"


# =============================================================================
# Authentication
# =============================================================================


class AuthenticationError(FidoAuthError):
    """Authentication failed - cannot verify user identity.

    Raised when:
    - No session token is available (user not logged in)
    - The session token is unknown or expired
    - The device flow ended without approval

    Exit code 13 indicates authentication failure.
    """

    exit_code = 13
    failure_type = "authentication_failure"


class SessionValidationError(AuthenticationError):
    """Session token did not resolve to a live session."""

    failure_type = "session_invalid"


class SessionNotFoundError(SessionValidationError):
    """Session token is unknown: never issued, logged out, or swept."""

    failure_type = "session_not_found"


class SessionExpiredError(SessionValidationError):
    """Session token exists but has passed its expiry time.

    The row may still be present until the next cleanup sweep; validation
    checks expiry itself and never relies on cleanup timing.
    """

    failure_type = "session_expired"


# =============================================================================
# Device Flow
# =============================================================================


class DeviceFlowError(AuthenticationError):
    """Device flow specific errors."""

    pass


class DeviceFlowExpiredError(DeviceFlowError):
    """Device code expired before user authenticated."""

    pass


class DeviceFlowDeniedError(DeviceFlowError):
    """User denied the authorization request."""

    pass


class DeviceFlowTimeoutError(DeviceFlowError):
    """Client gave up waiting for approval."""

    pass


class DeviceFlowCancelledError(DeviceFlowError):
    """Caller cancelled the flow while waiting for approval."""

    pass


# =============================================================================
# Transient Failures
# =============================================================================


class TransientStorageError(FidoAuthError):
    """Backing store is unavailable or failed mid-operation.

    Callers may retry. Callers validating a session MUST treat this as
    "cannot authenticate this request", never as "assume valid".
    """

    failure_type = "storage_unavailable"


class TokenCollisionError(FidoAuthError):
    """Token generation kept colliding with existing tokens.

    Raised only after MAX_TOKEN_ATTEMPTS consecutive uniqueness violations,
    which indicates a broken entropy source rather than bad luck.
    """

    failure_type = "token_collision"


class IdentityProviderError(FidoAuthError):
    """External identity provider is unreachable or returned an unusable response."""

    failure_type = "identity_provider_failure"


class ServerUnavailableError(FidoAuthError):
    """Client could not reach the auth server (network or 5xx).

    The client keeps its persisted session when this happens - the token
    may still be valid - but does not treat the caller as authenticated.
    """

    failure_type = "server_unavailable"


# =============================================================================
# Local Persistence
# =============================================================================


class SessionPersistenceError(FidoAuthError):
    """Client session file could not be written or removed.

    Login still succeeds for the current process, but the session will not
    survive a restart. Must be surfaced to the user.
    """

    failure_type = "session_persistence_failure"


# =============================================================================
# Configuration
# =============================================================================


class ConfigurationError(FidoAuthError):
    """Configuration is invalid or incomplete.

    Raised when:
    - Config file contains invalid JSON
    - Config file or environment fails Pydantic validation
    - Required provider settings (client id) are missing at server start

    Exit code 16 indicates configuration failure.
    """

    exit_code = 16
    failure_type = "configuration_failure"
