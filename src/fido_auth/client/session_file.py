"""Local persistence of the session token (~/.fido/session).

The file holds a single line: the opaque token. It is either fully written
or absent. save() writes a temp file in the same directory, restricts it to
owner read/write, fsyncs it, and only then renames it over the final path,
so a reader never sees a partial token and the token is never readable by
others, not even briefly.

load() never fails hard: a missing, empty, unreadable or malformed file all
mean "not logged in" and the caller falls back to a fresh login.
"""

from __future__ import annotations

__all__ = [
    "ClientSessionStore",
    "is_valid_session_token",
]

import contextlib
import os
import sys
import tempfile
import time
from pathlib import Path

from fido_auth.constants import (
    MAX_CLIENT_TOKEN_LENGTH,
    MIN_CLIENT_TOKEN_LENGTH,
    STALE_TEMP_FILE_SECONDS,
)
from fido_auth.exceptions import SessionPersistenceError
from fido_auth.telemetry.system_logger import get_system_logger
from fido_auth.utils.file_helpers import set_secure_permissions


def is_valid_session_token(token: str) -> bool:
    """Shape check for a persisted token: bounded length, printable, no spaces."""
    if not MIN_CLIENT_TOKEN_LENGTH <= len(token) <= MAX_CLIENT_TOKEN_LENGTH:
        return False
    return token.isprintable() and not any(c.isspace() for c in token)


class ClientSessionStore:
    """Single-writer session file for one local profile.

    Args:
        path: Session file location (default ~/.fido/session).
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path).expanduser()
        self._logger = get_system_logger()

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.is_file()

    def load(self) -> str | None:
        """Read the persisted token.

        Returns:
            The token, or None if there is no usable session file.
        """
        try:
            content = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            self._invalid(f"Could not read session file: {e}")
            return None

        token = content.strip()
        if not token:
            return None
        if not is_valid_session_token(token):
            self._invalid("Session file content is not a valid token")
            return None

        if sys.platform != "win32":
            try:
                mode = self._path.stat().st_mode & 0o777
            except OSError:
                # Removed by a concurrent logout after the read
                return token
            if mode & 0o077:
                self._logger.warning(
                    {
                        "event": "session_file_permissions",
                        "message": f"Session file {self._path} is accessible by other users (mode {mode:o})",
                        "path": str(self._path),
                    }
                )
        return token

    def _invalid(self, message: str) -> None:
        self._logger.warning(
            {
                "event": "session_file_invalid",
                "message": message,
                "path": str(self._path),
            }
        )

    def save(self, token: str) -> None:
        """Atomically replace the session file with a new token.

        Raises:
            SessionPersistenceError: If the token is malformed or the file
                cannot be written. The previous file (if any) is left intact.
        """
        if not is_valid_session_token(token):
            raise SessionPersistenceError("Refusing to save a malformed session token")

        directory = self._path.parent
        try:
            if not directory.exists():
                directory.mkdir(mode=0o700, parents=True, exist_ok=True)
                set_secure_permissions(directory, is_directory=True)
            self._remove_stale_temp_files()

            fd, tmp_name = tempfile.mkstemp(prefix=f"{self._path.name}.", suffix=".tmp", dir=directory)
            try:
                if sys.platform != "win32":
                    os.fchmod(fd, 0o600)
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(token + "\n")
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, self._path)
            except BaseException:
                with contextlib.suppress(OSError):
                    os.unlink(tmp_name)
                raise

            self._fsync_directory(directory)
        except OSError as e:
            raise SessionPersistenceError(f"Could not save session to {self._path}: {e}") from e

        self._logger.info(
            {
                "event": "session_file_saved",
                "message": f"Session saved to {self._path}",
                "path": str(self._path),
            }
        )

    def delete(self) -> None:
        """Remove the session file. Missing file is not an error.

        Raises:
            SessionPersistenceError: If the file exists but cannot be removed.
        """
        try:
            self._path.unlink(missing_ok=True)
        except OSError as e:
            raise SessionPersistenceError(f"Could not remove session file {self._path}: {e}") from e

    def _remove_stale_temp_files(self) -> None:
        """Remove leftovers of interrupted saves (older than STALE_TEMP_FILE_SECONDS)."""
        cutoff = time.time() - STALE_TEMP_FILE_SECONDS
        for candidate in self._path.parent.glob(f"{self._path.name}.*.tmp"):
            with contextlib.suppress(OSError):
                if candidate.stat().st_mtime < cutoff:
                    candidate.unlink()

    @staticmethod
    def _fsync_directory(directory: Path) -> None:
        """Persist the rename itself (POSIX only)."""
        if sys.platform == "win32":
            return
        dir_fd = os.open(directory, os.O_RDONLY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)
