"""Client side of fido-auth: server API client, session file, login state machine."""

from .api_client import APIClientError, FidoAPIClient, PollResponse
from .orchestrator import AuthOrchestrator, AuthState, LoginResult
from .session_file import ClientSessionStore

__all__ = [
    "APIClientError",
    "AuthOrchestrator",
    "AuthState",
    "ClientSessionStore",
    "FidoAPIClient",
    "LoginResult",
    "PollResponse",
]
