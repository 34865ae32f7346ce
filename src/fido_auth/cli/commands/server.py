"""Server commands for fido-auth CLI.

Commands:
    serve  - Run the auth server
    sweep  - Remove expired sessions and stale device-flow records once
"""

from __future__ import annotations

__all__ = ["serve", "sweep"]

import sys
from pathlib import Path
from typing import NoReturn

import click
import uvicorn

from fido_auth.config import ServerConfig, load_server_config
from fido_auth.exceptions import ConfigurationError, TransientStorageError

from ..styling import style_error, style_label, style_success

config_file_option = click.option(
    "--config",
    "config_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Server config JSON (default: $FIDO_CONFIG_FILE or the user config dir)",
)


def _config_error_exit(error: ConfigurationError) -> NoReturn:
    click.echo(style_error(f"Configuration error: {error}"), err=True)
    sys.exit(error.exit_code)


def _load_config_or_exit(config_file: Path | None) -> ServerConfig:
    try:
        return load_server_config(config_file=config_file)
    except ConfigurationError as e:
        _config_error_exit(e)


@click.command()
@config_file_option
@click.option("--host", default=None, help="Bind address (overrides config)")
@click.option("--port", type=click.IntRange(1, 65535), default=None, help="Bind port (overrides config)")
def serve(config_file: Path | None, host: str | None, port: int | None) -> None:
    """Run the auth server.

    Requires GITHUB_CLIENT_ID. Sessions and users are stored in the
    database at DATABASE_URL (or DATABASE_PATH, default ./fido.db).
    """
    from fido_auth.api.server import create_api_app

    config = _load_config_or_exit(config_file)
    updates = {k: v for k, v in (("host", host), ("port", port)) if v is not None}
    if updates:
        config = config.model_copy(update=updates)

    try:
        app = create_api_app(config)
    except ConfigurationError as e:
        _config_error_exit(e)
    except TransientStorageError as e:
        click.echo(style_error(f"Database unavailable: {e}"), err=True)
        sys.exit(1)

    click.echo(f"{style_label('Listening')} http://{config.host}:{config.port}")
    uvicorn.run(app, host=config.host, port=config.port, log_level="warning")


@click.command()
@config_file_option
def sweep(config_file: Path | None) -> None:
    """Remove expired sessions and stale device-flow records once.

    Runs the same pass the server runs on startup and every
    cleanup_interval_seconds.
    """
    from fido_auth.storage import CleanupScheduler, DeviceFlowStore, SessionStore, create_db_engine, init_schema, utcnow

    config = _load_config_or_exit(config_file)
    engine = create_db_engine(config.database_url)
    try:
        init_schema(engine)
        sessions_removed = CleanupScheduler(SessionStore(engine, ttl=config.session_ttl)).run_once().sessions_removed
        flows_removed = DeviceFlowStore(engine).purge_stale(utcnow(), config.device_flow_retention)
    except TransientStorageError as e:
        raise click.ClickException(f"Database unavailable: {e}") from e
    finally:
        engine.dispose()

    click.echo(
        style_success(
            f"Removed {sessions_removed} expired session(s) "
            f"and {flows_removed} device flow record(s)"
        )
    )
