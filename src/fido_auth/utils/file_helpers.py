"""Filesystem helpers shared by the server config loader and the client.

- get_app_dir: per-user config directory (server.json lives here)
- set_secure_permissions: owner-only mode for session files and their directory
- load_validated_json: read a JSON file into a pydantic model
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import TypeVar

from platformdirs import user_config_dir
from pydantic import BaseModel, ValidationError

from fido_auth.constants import APP_NAME

ModelT = TypeVar("ModelT", bound=BaseModel)

__all__ = [
    "get_app_dir",
    "load_validated_json",
    "set_secure_permissions",
]


def get_app_dir() -> Path:
    """Per-user config directory for fido-auth.

    ~/.config/fido on Linux, ~/Library/Application Support/fido on macOS,
    %LOCALAPPDATA%\\fido on Windows (see platformdirs.user_config_dir).
    """
    return Path(user_config_dir(APP_NAME))


def set_secure_permissions(path: Path, *, is_directory: bool = False) -> None:
    """Restrict path to its owner: 0700 for directories, 0600 for files.

    No-op on Windows, where POSIX modes do not apply.

    Raises:
        OSError: If chmod fails.
    """
    if sys.platform == "win32":
        return
    path.chmod(0o700 if is_directory else 0o600)


def load_validated_json(file_path: Path, model_class: type[ModelT], file_type: str = "file") -> ModelT:
    """Read file_path as JSON and validate it with model_class.

    Args:
        file_path: JSON file to read.
        model_class: Model the content must satisfy.
        file_type: Used in error messages ("server config").

    Raises:
        ValueError: Unreadable file, invalid JSON, or content the model
            rejects (one "  - field: reason" line per problem).
    """
    try:
        data = json.loads(file_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in {file_type} file {file_path}: {e}") from e
    except OSError as e:
        raise ValueError(f"Could not read {file_type} file {file_path}: {e}") from e

    try:
        return model_class.model_validate(data)
    except ValidationError as e:
        problems = "\n".join(
            f"  - {'.'.join(map(str, err['loc'])) or '(root)'}: {err['msg']}" for err in e.errors()
        )
        raise ValueError(f"Invalid {file_type} in {file_path}:\n{problems}") from e
