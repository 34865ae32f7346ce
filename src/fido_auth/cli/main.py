"""Main CLI entry point for fido-auth.

Defines the CLI group and registers all subcommands.

Commands:
    login   - Authenticate via browser (device flow)
    logout  - End the current session
    status  - Show authentication status
    serve   - Run the auth server
    sweep   - Remove expired sessions once

Subcommand help:
    fido-auth COMMAND -h         Show help for a specific command
"""

from __future__ import annotations

__all__ = ["cli", "main"]

import sys

import click

from fido_auth import __version__

from .commands.auth import login, logout, status
from .commands.server import serve, sweep


class ReorderedGroup(click.Group):
    """Custom group that shows commands before custom help text."""

    def format_epilog(self, ctx: click.Context, formatter: click.HelpFormatter) -> None:
        """Add extra help after commands section."""
        formatter.write(
            """
Quick Start (server):
  export GITHUB_CLIENT_ID=<oauth app client id>
  fido-auth serve --port 3000

Quick Start (client):
  fido-auth login --server http://127.0.0.1:3000
  fido-auth status

Environment:
  FIDO_SERVER_URL     Auth server URL used by login/logout/status
  FIDO_SESSION_FILE   Session file (default ~/.fido/session)
  DATABASE_URL        Server database (default sqlite:///fido.db)
"""
        )


@click.group(
    cls=ReorderedGroup,
    invoke_without_command=True,
    context_settings={"help_option_names": ["-h", "--help"]},
)
@click.option("--version", "-v", is_flag=True, help="Show version")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """fido-auth: session and device-flow authentication."""
    if version:
        click.echo(f"fido-auth {__version__}")
        sys.exit(0)
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


# Register commands
cli.add_command(login)
cli.add_command(logout)
cli.add_command(status)
cli.add_command(serve)
cli.add_command(sweep)


def main() -> None:
    """CLI entry point."""
    cli()
