"""Command-line interface for fido-auth.

Provides commands for logging in through the device flow, inspecting and
ending the local session, and running the auth server.
"""

from .main import cli, main

__all__ = ["cli", "main"]
