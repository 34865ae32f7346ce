"""API route modules.

Route organization:
- auth: Device flow, session validation and logout
- health: Liveness check
"""

from . import auth, health

__all__ = [
    "auth",
    "health",
]
