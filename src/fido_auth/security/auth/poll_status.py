"""Outcome of one device flow poll, shared by the coordinator and the client.

Kept free of storage imports so the CLI can dispatch on poll outcomes
without loading the server stack.
"""

from __future__ import annotations

__all__ = ["PollStatus"]

from enum import Enum


class PollStatus(str, Enum):
    """Outcome of one poll, named after the OAuth wire codes."""

    AUTHORIZATION_PENDING = "authorization_pending"
    SLOW_DOWN = "slow_down"
    ACCESS_DENIED = "access_denied"
    EXPIRED_TOKEN = "expired_token"
    APPROVED = "approved"
