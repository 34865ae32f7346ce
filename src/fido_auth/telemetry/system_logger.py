"""Operational log for the auth server and CLI client.

One process-wide logger, "fido.system", with two sinks:
- stderr, INFO and above, one "LEVEL: message" line per record
- <log_dir>/system.jsonl, WARNING and above, added by
  configure_system_logger_file() once the server config names a log_dir

Records are dicts carrying "event" and "message" plus context fields:

    get_system_logger().info({"event": "session_created", "message": "...", "user_id": ...})

Session tokens, device codes and provider access tokens are secrets. Only
token_prefix(value) may appear in a record.
"""

from __future__ import annotations

__all__ = [
    "ConsoleFormatter",
    "configure_system_logger_file",
    "get_system_logger",
    "reset_system_logger",
    "token_prefix",
]

import logging
import sys
from pathlib import Path

from fido_auth.constants import APP_NAME
from fido_auth.utils.file_helpers import set_secure_permissions
from fido_auth.utils.logging.iso_formatter import ISO8601Formatter

# Characters of a secret that may be shown in logs
_TOKEN_PREFIX_LENGTH = 8

SYSTEM_LOGGER_NAME = f"{APP_NAME}.system"


class ConsoleFormatter(logging.Formatter):
    """Short "LEVEL: message" lines for stderr; context fields are left to the JSONL file."""

    def format(self, record: logging.LogRecord) -> str:
        if isinstance(record.msg, dict):
            text = record.msg.get("message") or record.msg.get("event", "")
        else:
            text = record.getMessage()
        return f"{record.levelname}: {text}"


_system_logger: logging.Logger | None = None
_log_file: Path | None = None


def get_system_logger() -> logging.Logger:
    """Return the shared system logger, creating its stderr sink on first use."""
    global _system_logger

    if _system_logger is None:
        logger = logging.getLogger(SYSTEM_LOGGER_NAME)
        logger.setLevel(logging.INFO)
        # Keep records out of the root logger (uvicorn configures it)
        logger.propagate = False
        _close_handlers(logger)

        console = logging.StreamHandler(sys.stderr)
        console.setLevel(logging.INFO)
        console.setFormatter(ConsoleFormatter())
        logger.addHandler(console)
        _system_logger = logger

    return _system_logger


def configure_system_logger_file(log_path: Path) -> bool:
    """Also write WARNING and above to log_path as JSONL.

    The parent directory is created owner-only. Calling again with the same
    path is a no-op; a different path replaces the previous file sink.

    Returns:
        True if the file sink is active. False if the directory could not
        be created, in which case a warning goes to stderr and logging
        continues there only.
    """
    global _log_file

    logger = get_system_logger()
    if _log_file == log_path:
        return True

    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        set_secure_permissions(log_path.parent, is_directory=True)
        file_handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
    except OSError as e:
        logger.warning(
            {
                "event": "log_file_unavailable",
                "message": f"Cannot write system log to {log_path}: {e}",
            }
        )
        return False

    for handler in [h for h in logger.handlers if isinstance(h, logging.FileHandler)]:
        logger.removeHandler(handler)
        handler.close()

    file_handler.setLevel(logging.WARNING)
    file_handler.setFormatter(ISO8601Formatter())
    logger.addHandler(file_handler)
    _log_file = log_path
    return True


def _close_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


def reset_system_logger() -> None:
    """Drop all sinks so the next get_system_logger() starts fresh (tests)."""
    global _system_logger, _log_file

    if _system_logger is not None:
        _close_handlers(_system_logger)
    _system_logger = None
    _log_file = None


def token_prefix(token: str) -> str:
    """Log-safe form of a secret: its first characters followed by "..."."""
    return f"{token[:_TOKEN_PREFIX_LENGTH]}..."
