"""Per-session-token rate limiting.

Requests that carry an X-Session-Token header are counted per token in a
sliding window. Once a token exceeds the limit, further requests get 429
until enough of the window has passed. Requests without a token (device
flow start/poll, health) are not counted here; the device flow enforces its
own poll interval.

Usage:
    limiter = TokenRateLimiter(max_requests=100, window_seconds=60)
    app.add_middleware(RateLimitMiddleware, limiter=limiter)
"""

from __future__ import annotations

__all__ = [
    "RateLimitMiddleware",
    "TokenRateLimiter",
]

import math
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from time import monotonic

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp

from fido_auth.api.errors import ErrorCode
from fido_auth.constants import (
    DEFAULT_RATE_LIMIT_REQUESTS,
    DEFAULT_RATE_LIMIT_WINDOW_SECONDS,
    SESSION_TOKEN_HEADER,
)
from fido_auth.telemetry.system_logger import get_system_logger, token_prefix

# Drop idle token windows after this many checks
_PRUNE_EVERY_CHECKS = 1000


@dataclass(slots=True)
class TokenRateLimiter:
    """Track request rates per session token using a sliding window.

    Thread-safe.

    Attributes:
        max_requests: Requests allowed per token per window.
        window_seconds: Duration of the sliding window.
        clock: Monotonic time source (injectable for tests).
    """

    max_requests: int = DEFAULT_RATE_LIMIT_REQUESTS
    window_seconds: float = DEFAULT_RATE_LIMIT_WINDOW_SECONDS
    clock: Callable[[], float] = monotonic

    # Internal state: {token: deque[timestamp]}
    _windows: dict[str, deque[float]] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)
    _checks: int = 0

    def check(self, token: str) -> tuple[bool, float]:
        """Record a request and decide whether it is allowed.

        Args:
            token: Session token the request carries.

        Returns:
            Tuple of (is_allowed, retry_after_seconds). retry_after is 0 when
            allowed, otherwise the time until the oldest request leaves the window.
        """
        with self._lock:
            now = self.clock()
            cutoff = now - self.window_seconds

            self._checks += 1
            if self._checks % _PRUNE_EVERY_CHECKS == 0:
                self._prune(cutoff)

            window = self._windows.setdefault(token, deque())
            while window and window[0] <= cutoff:
                window.popleft()

            if len(window) >= self.max_requests:
                return False, window[0] + self.window_seconds - now

            window.append(now)
            return True, 0.0

    def get_count(self, token: str) -> int:
        """Current count for a token without recording a request."""
        with self._lock:
            cutoff = self.clock() - self.window_seconds
            window = self._windows.get(token)
            if not window:
                return 0
            return sum(1 for t in window if t > cutoff)

    def _prune(self, cutoff: float) -> None:
        idle = [token for token, window in self._windows.items() if not window or window[-1] <= cutoff]
        for token in idle:
            del self._windows[token]

    def clear(self) -> None:
        with self._lock:
            self._windows.clear()

    @property
    def tracked_tokens(self) -> int:
        """Number of tokens currently being tracked."""
        with self._lock:
            return len(self._windows)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Reject requests whose session token exceeded its rate limit."""

    def __init__(self, app: ASGIApp, limiter: TokenRateLimiter) -> None:
        super().__init__(app)
        self.limiter = limiter
        self._logger = get_system_logger()

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        token = request.headers.get(SESSION_TOKEN_HEADER)
        if token:
            allowed, retry_after = self.limiter.check(token)
            if not allowed:
                self._logger.warning(
                    {
                        "event": "rate_limit_exceeded",
                        "message": f"Rate limit exceeded: {request.method} {request.url.path}",
                        "token_prefix": token_prefix(token),
                        "path": str(request.url.path),
                    }
                )
                return JSONResponse(
                    status_code=429,
                    content={
                        "detail": {
                            "code": ErrorCode.RATE_LIMITED.value,
                            "message": "Too many requests. Try again later.",
                        }
                    },
                    headers={"Retry-After": str(max(1, math.ceil(retry_after)))},
                )

        return await call_next(request)
