"""Operational logging for fido-auth."""

from fido_auth.telemetry.system_logger import (
    configure_system_logger_file,
    get_system_logger,
    token_prefix,
)

__all__ = [
    "configure_system_logger_file",
    "get_system_logger",
    "token_prefix",
]
