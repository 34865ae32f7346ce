"""Error envelope shared by every non-2xx response of the auth server.

Routes raise APIError with an ErrorCode; domain exceptions that escape a
route are mapped by fido_error_handler. Clients dispatch on detail.code.

Usage:
    from fido_auth.api.errors import APIError, ErrorCode

    raise APIError(
        status_code=400,
        code=ErrorCode.SLOW_DOWN,
        message="Polling too fast",
        details={"interval": 10},
    )

Response format:
    {
        "detail": {
            "code": "slow_down",
            "message": "Polling too fast",
            "details": {"interval": 10}
        }
    }
"""

from __future__ import annotations

__all__ = [
    "APIError",
    "ErrorCode",
    "api_error_handler",
    "fido_error_handler",
    "http_exception_handler",
    "validation_error_handler",
]

from enum import Enum
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from fido_auth.exceptions import (
    FidoAuthError,
    IdentityProviderError,
    SessionValidationError,
    TransientStorageError,
)
from fido_auth.telemetry.system_logger import get_system_logger


class ErrorCode(str, Enum):
    """API error codes for programmatic handling.

    Device flow codes keep the OAuth 2.0 wire names (RFC 8628 section 3.5) so
    clients can treat them the same as a provider's token endpoint errors.
    Everything else is upper-case and namespaced by domain:
    - AUTH_*: Session authentication errors
    - VALIDATION_*: Input validation errors
    - INTERNAL_* / UPSTREAM_* / SERVICE_*: Server-side failures
    """

    # Device flow (400)
    AUTHORIZATION_PENDING = "authorization_pending"
    SLOW_DOWN = "slow_down"
    EXPIRED_TOKEN = "expired_token"
    ACCESS_DENIED = "access_denied"

    # Authentication errors (401)
    AUTH_REQUIRED = "AUTH_REQUIRED"

    # Resource errors (404)
    NOT_FOUND = "NOT_FOUND"

    # Validation errors (400, 422)
    VALIDATION_ERROR = "VALIDATION_ERROR"

    # Throttling (429)
    RATE_LIMITED = "RATE_LIMITED"

    # Internal errors (500, 502, 503)
    INTERNAL_ERROR = "INTERNAL_ERROR"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"


class APIError(HTTPException):
    """HTTPException carrying a {"code", "message", "details"} body.

    Attributes:
        code: Machine-readable error code.
        error_message: Message shown to the user.
        error_details: Extra fields, e.g. {"interval": 10} for slow_down.
    """

    def __init__(
        self,
        status_code: int,
        code: ErrorCode,
        message: str,
        details: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.code = code
        self.error_message = message
        self.error_details = details

        body: dict[str, Any] = {"code": code.value, "message": message}
        if details:
            body["details"] = details
        super().__init__(status_code=status_code, detail=body, headers=headers)


async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=exc.headers)


async def fido_error_handler(request: Request, exc: FidoAuthError) -> JSONResponse:
    """Map domain exceptions that escaped a route to structured responses.

    Session validation failures become 401, storage outages 503 and
    identity provider failures 502. Nothing here ever yields a 2xx.
    """
    if isinstance(exc, SessionValidationError):
        status_code, code, message = 401, ErrorCode.AUTH_REQUIRED, "Invalid or expired session"
    elif isinstance(exc, TransientStorageError):
        status_code, code, message = 503, ErrorCode.SERVICE_UNAVAILABLE, "Session storage unavailable. Retry later."
    elif isinstance(exc, IdentityProviderError):
        status_code, code, message = 502, ErrorCode.UPSTREAM_ERROR, f"Identity provider error: {exc}"
    else:
        status_code, code, message = 500, ErrorCode.INTERNAL_ERROR, "Internal server error"

    if status_code >= 500:
        get_system_logger().error(
            {
                "event": "request_failed",
                "message": f"{request.method} {request.url.path} failed: {exc}",
                "error_type": type(exc).__name__,
                "failure_type": exc.failure_type,
                "path": str(request.url.path),
            }
        )

    return JSONResponse(
        status_code=status_code,
        content={"detail": {"code": code.value, "message": message}},
    )


def _field_path(loc: tuple[Any, ...] | list[Any]) -> str:
    # "body" / "query" prefixes say where, not what
    return ".".join(str(part) for part in loc[1:] if part is not None) if loc else ""


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report malformed request bodies as 422 VALIDATION_ERROR.

    The message names the first offending field; every field-level error
    is listed under details.errors.
    """
    errors = exc.errors()
    fields = [
        {"field": _field_path(error.get("loc", ())), "message": error.get("msg", "invalid value")}
        for error in errors
    ]

    if fields and fields[0]["field"]:
        message = f"Invalid request: {fields[0]['field']}: {fields[0]['message']}"
    else:
        message = "Invalid request body"
    if len(fields) > 1:
        message += f" (and {len(fields) - 1} more)"

    return JSONResponse(
        status_code=422,
        content={
            "detail": {
                "code": ErrorCode.VALIDATION_ERROR.value,
                "message": message,
                "details": {"errors": fields},
            }
        },
    )


# Default code for HTTPExceptions raised by the framework (404, 405, ...)
_DEFAULT_CODES: dict[int, ErrorCode] = {
    400: ErrorCode.VALIDATION_ERROR,
    401: ErrorCode.AUTH_REQUIRED,
    404: ErrorCode.NOT_FOUND,
    405: ErrorCode.NOT_FOUND,
    429: ErrorCode.RATE_LIMITED,
    502: ErrorCode.UPSTREAM_ERROR,
    503: ErrorCode.SERVICE_UNAVAILABLE,
}


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Give framework-raised HTTP errors the same envelope as APIError."""
    detail = exc.detail
    if not (isinstance(detail, dict) and "code" in detail):
        detail = {
            "code": _DEFAULT_CODES.get(exc.status_code, ErrorCode.INTERNAL_ERROR).value,
            "message": str(detail) if detail else f"HTTP {exc.status_code}",
        }
    return JSONResponse(status_code=exc.status_code, content={"detail": detail}, headers=exc.headers)
