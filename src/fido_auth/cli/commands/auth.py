"""Authentication commands for fido-auth CLI.

Commands:
    login   - Authenticate via browser (device flow)
    logout  - End the session on the server and remove the local session file
    status  - Show whether the local session is still accepted by the server
"""

from __future__ import annotations

__all__ = ["login", "logout", "status"]

import json as json_module
from pathlib import Path
from typing import Any

import click

from fido_auth.client import APIClientError, AuthOrchestrator, ClientSessionStore, FidoAPIClient
from fido_auth.config import ClientConfig, load_client_config
from fido_auth.exceptions import (
    ConfigurationError,
    DeviceFlowCancelledError,
    DeviceFlowDeniedError,
    DeviceFlowError,
    DeviceFlowExpiredError,
    DeviceFlowTimeoutError,
    ServerUnavailableError,
    SessionPersistenceError,
)

from ..styling import style_dim, style_label, style_success, style_warning

server_option = click.option(
    "--server",
    "server_url",
    default=None,
    help="Auth server URL (default: $FIDO_SERVER_URL or http://127.0.0.1:3000)",
)
session_file_option = click.option(
    "--session-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Session file (default: $FIDO_SESSION_FILE or ~/.fido/session)",
)


def _load_config_or_exit(server_url: str | None, session_file: Path | None, **overrides: Any) -> ClientConfig:
    try:
        return load_client_config(server_url=server_url, session_file=session_file, **overrides)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def _api_client(config: ClientConfig) -> FidoAPIClient:
    return FidoAPIClient(config.server_url, timeout=config.request_timeout_seconds)


@click.command()
@click.option("--no-browser", is_flag=True, help="Don't automatically open browser")
@click.option(
    "--timeout",
    type=click.FloatRange(min=1),
    default=None,
    help="Seconds to wait for approval (default: 900)",
)
@server_option
@session_file_option
def login(no_browser: bool, timeout: float | None, server_url: str | None, session_file: Path | None) -> None:
    """Authenticate via browser using the device flow.

    Shows a short code and a URL. Open the URL on any device, sign in with
    GitHub and enter the code. The session is stored in ~/.fido/session and
    reused by later commands until it expires (30 days).
    """
    overrides: dict[str, Any] = {"open_browser": not no_browser}
    if timeout is not None:
        overrides["timeout_seconds"] = timeout
    config = _load_config_or_exit(server_url, session_file, **overrides)

    def display_callback(user_code: str, verification_uri: str) -> None:
        click.echo(click.style("Authentication Required", fg="cyan", bold=True))
        click.echo()
        click.echo(f"  Your code: {click.style(user_code, fg='green', bold=True)}")
        click.echo()
        click.echo(f"  1. Open: {click.style(verification_uri, fg='blue', underline=True)}")
        click.echo("  2. Enter the code above")
        click.echo()

    def poll_callback() -> None:
        click.echo(".", nl=False)

    with _api_client(config) as api:
        orchestrator = AuthOrchestrator(
            api,
            ClientSessionStore(config.session_file),
            timeout=config.timeout_seconds,
            open_browser=config.open_browser,
            display_callback=display_callback,
            poll_callback=poll_callback,
        )

        try:
            user = orchestrator.check_existing()
        except ServerUnavailableError as e:
            raise click.ClickException(str(e)) from e
        if user is not None:
            click.echo(style_success(f"Already logged in as {user.external_login}"))
            click.echo(style_dim("Run 'fido-auth logout' first to switch accounts."))
            return

        click.echo("Starting authentication...")
        click.echo()
        try:
            result = orchestrator.login()
        except DeviceFlowDeniedError:
            click.echo()
            raise click.ClickException("Authentication was denied.")
        except (DeviceFlowExpiredError, DeviceFlowTimeoutError):
            click.echo()
            raise click.ClickException("Authentication timed out. Please run 'fido-auth login' again.")
        except DeviceFlowCancelledError:
            click.echo()
            raise click.ClickException("Login cancelled.")
        except DeviceFlowError as e:
            click.echo()
            raise click.ClickException(f"Authentication failed: {e}") from e
        except (ServerUnavailableError, APIClientError) as e:
            click.echo()
            raise click.ClickException(str(e)) from e

    click.echo()
    click.echo()
    click.echo(click.style(style_success("Authentication successful!"), bold=True))
    click.echo()
    click.echo(f"  Logged in as: {result.user.external_login}")
    if result.persisted:
        click.echo(f"  Session stored in: {config.session_file}")
    else:
        click.echo(style_warning(f"session could not be saved ({result.persistence_error})"))
        click.echo("  You will need to log in again next time.")


@click.command()
@server_option
@session_file_option
def logout(server_url: str | None, session_file: Path | None) -> None:
    """End the current session.

    The session is deleted on the server when it is reachable; the local
    session file is removed either way.
    """
    config = _load_config_or_exit(server_url, session_file)
    store = ClientSessionStore(config.session_file)

    if not store.exists():
        click.echo(style_dim("No stored session found."))
        return

    with _api_client(config) as api:
        try:
            server_confirmed = AuthOrchestrator(api, store).logout()
        except SessionPersistenceError as e:
            raise click.ClickException(f"Failed to clear session: {e}") from e

    click.echo(style_success("Local session cleared."))
    if not server_confirmed:
        click.echo(style_warning("auth server unreachable; the session stays valid on the server until it expires."))
    click.echo()
    click.echo("Run 'fido-auth login' to authenticate again.")


@click.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@server_option
@session_file_option
def status(as_json: bool, server_url: str | None, session_file: Path | None) -> None:
    """Show authentication status.

    Asks the server whether the stored session is still valid.
    """
    config = _load_config_or_exit(server_url, session_file)
    store = ClientSessionStore(config.session_file)

    result: dict[str, Any] = {
        "authenticated": False,
        "status": "not_authenticated",
        "server_url": config.server_url,
        "session_file": str(config.session_file),
    }

    if store.load() is not None:
        with _api_client(config) as api:
            try:
                user = AuthOrchestrator(api, store).check_existing()
            except ServerUnavailableError as e:
                result["status"] = "server_unavailable"
                result["error"] = str(e)
            except APIClientError as e:
                result["status"] = "error"
                result["error"] = str(e)
            else:
                if user is None:
                    result["status"] = "session_rejected"
                else:
                    result["status"] = "authenticated"
                    result["authenticated"] = True
                    result["user"] = user.model_dump(mode="json")

    if as_json:
        click.echo(json_module.dumps(result, indent=2))
    else:
        _print_status_formatted(result)

    if not result["authenticated"]:
        raise SystemExit(1)


def _print_status_formatted(result: dict[str, Any]) -> None:
    """Print status in human-readable format."""
    click.echo(f"{style_label('Server')} {result['server_url']}")
    click.echo(f"{style_label('Session file')} {result['session_file']}")
    click.echo()

    status_value = result["status"]
    if status_value == "authenticated":
        user = result["user"]
        click.echo(style_success(f"Logged in as {user['external_login']}"))
        click.echo(f"  User ID: {user['id']}")
    elif status_value == "session_rejected":
        click.echo(click.style("Status: Session expired or revoked", fg="yellow"))
        click.echo()
        click.echo("Run 'fido-auth login' to authenticate again.")
    elif status_value in ("server_unavailable", "error"):
        click.echo(click.style("Status: Could not verify session", fg="red"))
        click.echo(f"  Error: {result['error']}")
    else:
        click.echo(click.style("Status: Not logged in", fg="yellow"))
        click.echo()
        click.echo("Run 'fido-auth login' to authenticate.")
