"""Logging utilities."""

from fido_auth.utils.logging.iso_formatter import ISO8601Formatter

__all__ = ["ISO8601Formatter"]
