"""Application configuration for fido-auth.

Defines configuration models for the auth server and the CLI client.

Server settings come from three layers (lowest to highest priority):
1. Model defaults
2. Optional JSON file (FIDO_CONFIG_FILE, or server.json in the app config dir)
3. Environment variables (HOST, PORT, DATABASE_URL, GITHUB_CLIENT_ID, ...)

Client settings follow: CLI option > environment > default.

Example usage:
    config = load_server_config()
    app = create_api_app(config)

    client_config = load_client_config(server_url="http://localhost:3000")
"""

from __future__ import annotations

__all__ = [
    "ClientConfig",
    "GitHubConfig",
    "ServerConfig",
    "default_config_path",
    "default_session_file",
    "load_client_config",
    "load_server_config",
]

import os
from collections.abc import Mapping
from datetime import timedelta
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError, model_validator

from fido_auth.constants import (
    CLIENT_SESSION_DIR_NAME,
    CLIENT_SESSION_FILE_NAME,
    DEFAULT_CLEANUP_INTERVAL_SECONDS,
    DEFAULT_DATABASE_PATH,
    DEFAULT_DEVICE_FLOW_RETENTION_SECONDS,
    DEFAULT_HOST,
    DEFAULT_HTTP_TIMEOUT_SECONDS,
    DEFAULT_PORT,
    DEFAULT_RATE_LIMIT_REQUESTS,
    DEFAULT_RATE_LIMIT_WINDOW_SECONDS,
    DEFAULT_SERVER_URL,
    DEFAULT_SESSION_TTL_DAYS,
    DEFAULT_VALIDATION_CACHE_MAX_ENTRIES,
    DEFAULT_VALIDATION_CACHE_TTL_SECONDS,
    DEVICE_FLOW_TIMEOUT_SECONDS,
    GITHUB_DEVICE_CODE_URL,
    GITHUB_TOKEN_URL,
    GITHUB_USER_URL,
)
from fido_auth.exceptions import ConfigurationError
from fido_auth.utils.file_helpers import get_app_dir, load_validated_json

# Server config file name inside the app config dir
SERVER_CONFIG_FILE_NAME = "server.json"

# Environment variable → dotted config key
_SERVER_ENV_OVERRIDES: dict[str, str] = {
    "HOST": "host",
    "PORT": "port",
    "DATABASE_URL": "database_url",
    "GITHUB_CLIENT_ID": "github.client_id",
    "GITHUB_CLIENT_SECRET": "github.client_secret",
    "FIDO_SESSION_TTL_DAYS": "session_ttl_days",
    "FIDO_CLEANUP_INTERVAL_SECONDS": "cleanup_interval_seconds",
    "FIDO_LOG_DIR": "log_dir",
}


# =============================================================================
# Server Configuration
# =============================================================================


class GitHubConfig(BaseModel):
    """GitHub OAuth App settings for the device authorization grant.

    The client id is public. The client secret is server-only and never
    shipped to clients; GitHub's device flow works without it, so it is
    only sent when configured.

    Attributes:
        client_id: OAuth App client ID.
        client_secret: Optional OAuth App client secret.
        device_code_url: Device authorization endpoint.
        token_url: Token endpoint polled with the device code.
        user_url: Profile endpoint called with the access token.
        scopes: OAuth scopes to request.
    """

    client_id: str = ""
    client_secret: str | None = None
    device_code_url: str = GITHUB_DEVICE_CODE_URL
    token_url: str = GITHUB_TOKEN_URL
    user_url: str = GITHUB_USER_URL
    scopes: list[str] = Field(default=["read:user"])


class ServerConfig(BaseModel):
    """Auth server configuration.

    Attributes:
        host: Bind address.
        port: Bind port.
        database_url: SQLAlchemy URL of the session/user store.
        github: Identity provider settings.
        session_ttl_days: Session lifetime from creation.
        cleanup_interval_seconds: Period of the expired-session sweep.
        device_flow_retention_seconds: How long terminal device-flow records
            are kept so repeated polls return the same result.
        validation_cache_ttl_seconds: In-process validation cache TTL (0 disables).
        validation_cache_max_entries: Upper bound on cached tokens.
        rate_limit_requests: Requests allowed per token per window.
        rate_limit_window_seconds: Rate limit sliding window.
        log_dir: Directory for system.jsonl (warnings and errors). None = stderr only.
    """

    host: str = DEFAULT_HOST
    port: int = Field(default=DEFAULT_PORT, ge=1, le=65535)
    database_url: str = f"sqlite:///{DEFAULT_DATABASE_PATH}"
    github: GitHubConfig = Field(default_factory=GitHubConfig)
    session_ttl_days: int = Field(default=DEFAULT_SESSION_TTL_DAYS, ge=1)
    cleanup_interval_seconds: float = Field(default=DEFAULT_CLEANUP_INTERVAL_SECONDS, gt=0)
    device_flow_retention_seconds: float = Field(default=DEFAULT_DEVICE_FLOW_RETENTION_SECONDS, ge=0)
    validation_cache_ttl_seconds: float = Field(default=DEFAULT_VALIDATION_CACHE_TTL_SECONDS, ge=0)
    validation_cache_max_entries: int = Field(default=DEFAULT_VALIDATION_CACHE_MAX_ENTRIES, ge=1)
    rate_limit_requests: int = Field(default=DEFAULT_RATE_LIMIT_REQUESTS, ge=1)
    rate_limit_window_seconds: float = Field(default=DEFAULT_RATE_LIMIT_WINDOW_SECONDS, gt=0)
    log_dir: str | None = None

    @model_validator(mode="after")
    def _cache_shorter_than_session(self) -> "ServerConfig":
        if self.validation_cache_ttl_seconds >= self.session_ttl.total_seconds():
            raise ValueError("validation_cache_ttl_seconds must be shorter than the session lifetime")
        return self

    @property
    def session_ttl(self) -> timedelta:
        """Session lifetime as a timedelta."""
        return timedelta(days=self.session_ttl_days)

    @property
    def device_flow_retention(self) -> timedelta:
        """Post-terminal device-flow retention as a timedelta."""
        return timedelta(seconds=self.device_flow_retention_seconds)

    def require_provider(self) -> None:
        """Raise ConfigurationError if the identity provider is not configured."""
        if not self.github.client_id:
            raise ConfigurationError(
                "GITHUB_CLIENT_ID is not set.\n"
                "Create a GitHub OAuth App with device flow enabled and export its client id."
            )


def default_config_path() -> Path:
    """Return the default server config file location."""
    return get_app_dir() / SERVER_CONFIG_FILE_NAME


def _set_dotted(data: dict[str, Any], dotted_key: str, value: Any) -> None:
    """Set data["a"]["b"] = value for dotted_key "a.b"."""
    parts = dotted_key.split(".")
    target = data
    for part in parts[:-1]:
        target = target.setdefault(part, {})
    target[parts[-1]] = value


def load_server_config(
    env: Mapping[str, str] | None = None,
    config_file: Path | None = None,
) -> ServerConfig:
    """Load server configuration from defaults, optional file and environment.

    Args:
        env: Environment mapping (defaults to os.environ).
        config_file: Explicit JSON config file. If None, FIDO_CONFIG_FILE or the
            default location is used when it exists.

    Returns:
        Validated ServerConfig.

    Raises:
        ConfigurationError: If the file or environment values are invalid.
    """
    env = os.environ if env is None else env

    data: dict[str, Any] = {}
    path = config_file
    if path is None and env.get("FIDO_CONFIG_FILE"):
        path = Path(env["FIDO_CONFIG_FILE"]).expanduser()
    if path is None:
        candidate = default_config_path()
        path = candidate if candidate.exists() else None

    if path is not None:
        try:
            data = load_validated_json(path, ServerConfig, file_type="server config").model_dump(
                exclude_unset=True
            )
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

    for env_name, key in _SERVER_ENV_OVERRIDES.items():
        value = env.get(env_name)
        if value:
            _set_dotted(data, key, value)

    # DATABASE_PATH is a shorthand for a SQLite file (DATABASE_URL wins)
    if not env.get("DATABASE_URL") and env.get("DATABASE_PATH"):
        data["database_url"] = f"sqlite:///{env['DATABASE_PATH']}"

    try:
        return ServerConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid server configuration: {e}") from e


# =============================================================================
# Client Configuration
# =============================================================================


def default_session_file() -> Path:
    """Return the well-known session file location (~/.fido/session)."""
    return Path.home() / CLIENT_SESSION_DIR_NAME / CLIENT_SESSION_FILE_NAME


class ClientConfig(BaseModel):
    """CLI client configuration.

    Attributes:
        server_url: Base URL of the auth server.
        session_file: Where the session token is persisted.
        timeout_seconds: Overall wait for device-flow approval.
        open_browser: Try to open the verification URL automatically.
        request_timeout_seconds: Per-request HTTP timeout.
    """

    server_url: str = DEFAULT_SERVER_URL
    session_file: Path = Field(default_factory=default_session_file)
    timeout_seconds: float = Field(default=DEVICE_FLOW_TIMEOUT_SECONDS, gt=0)
    open_browser: bool = True
    request_timeout_seconds: float = Field(default=DEFAULT_HTTP_TIMEOUT_SECONDS, gt=0)


def load_client_config(
    server_url: str | None = None,
    session_file: Path | None = None,
    env: Mapping[str, str] | None = None,
    **overrides: Any,
) -> ClientConfig:
    """Resolve client configuration.

    Priority for server URL and session file: explicit argument (CLI option)
    > FIDO_SERVER_URL / FIDO_SESSION_FILE > default.

    Args:
        server_url: Server URL from the command line.
        session_file: Session file path from the command line.
        env: Environment mapping (defaults to os.environ).
        **overrides: Any other ClientConfig fields.

    Returns:
        Validated ClientConfig.

    Raises:
        ConfigurationError: If values are invalid.
    """
    env = os.environ if env is None else env

    data: dict[str, Any] = dict(overrides)
    resolved_url = server_url or env.get("FIDO_SERVER_URL")
    if resolved_url:
        data["server_url"] = resolved_url.rstrip("/")
    resolved_file = session_file or env.get("FIDO_SESSION_FILE")
    if resolved_file:
        data["session_file"] = Path(resolved_file).expanduser()

    try:
        return ClientConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid client configuration: {e}") from e
