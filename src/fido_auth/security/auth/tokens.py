"""Secure token and code generation.

All values come from the OS CSPRNG (uuid4 / secrets). There is no fallback
to a weaker source: if os.urandom is unavailable the error propagates and
the caller fails.
"""

from __future__ import annotations

__all__ = [
    "TokenGenerator",
    "USER_CODE_ALPHABET",
]

import secrets
import uuid

# RFC 8628 section 6.1: consonants only, no ambiguous characters, no vowels
# (so no words can be spelled by accident)
USER_CODE_ALPHABET = "BCDFGHJKLMNPQRSTVWXZ"

# 8 characters from 20 symbols ≈ 34.5 bits, plenty for a code valid minutes
USER_CODE_LENGTH = 8

# Bytes of randomness behind a device code (256 bits)
DEVICE_CODE_BYTES = 32


class TokenGenerator:
    """Produces opaque session tokens and device/user codes."""

    def generate(self) -> str:
        """Return a new session token: a random UUID4 (122 random bits)."""
        return str(uuid.uuid4())

    def generate_device_code(self) -> str:
        """Return a URL-safe device code with 256 bits of entropy."""
        return secrets.token_urlsafe(DEVICE_CODE_BYTES)

    def generate_user_code(self) -> str:
        """Return a human-typeable user code formatted as XXXX-XXXX."""
        chars = "".join(secrets.choice(USER_CODE_ALPHABET) for _ in range(USER_CODE_LENGTH))
        half = USER_CODE_LENGTH // 2
        return f"{chars[:half]}-{chars[half:]}"
