"""FastAPI application for the auth server.

Implements:
- Device flow API (/auth/device/start, /auth/device/poll)
- Session API (/auth/validate, /auth/logout)
- Liveness (/health)

Components (engine, user directory, session store, device flow
coordinator) are built once per app and stored on app.state; routes reach
them through the getters in deps.py. The cleanup scheduler runs for the
lifetime of the app: one sweep at startup, then every
cleanup_interval_seconds.

Usage:
    fido-auth serve

    or, with uvicorn directly:
        uvicorn fido_auth.api.server:create_api_app --factory --port 3000
"""

from __future__ import annotations

__all__ = ["create_api_app"]

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from sqlalchemy.engine import Engine
from starlette.exceptions import HTTPException as StarletteHTTPException

from fido_auth import __version__
from fido_auth.config import ServerConfig, load_server_config
from fido_auth.exceptions import FidoAuthError
from fido_auth.security.auth.device_flow import DeviceFlowCoordinator
from fido_auth.security.auth.github import GitHubDeviceFlowClient, IdentityProvider
from fido_auth.security.rate_limiter import RateLimitMiddleware, TokenRateLimiter
from fido_auth.storage.cleanup import CleanupScheduler
from fido_auth.storage.database import create_db_engine, init_schema, utcnow
from fido_auth.storage.sessions import SessionStore, ValidationCache
from fido_auth.storage.users import UserDirectory
from fido_auth.telemetry.system_logger import configure_system_logger_file, get_system_logger

from .errors import (
    APIError,
    api_error_handler,
    fido_error_handler,
    http_exception_handler,
    validation_error_handler,
)
from .routes import auth, health

# System log file name inside config.log_dir
SYSTEM_LOG_FILE_NAME = "system.jsonl"


def create_api_app(
    config: ServerConfig | None = None,
    *,
    engine: Engine | None = None,
    provider: IdentityProvider | None = None,
    clock: Callable[[], datetime] = utcnow,
    run_cleanup: bool = True,
) -> FastAPI:
    """Create the FastAPI application with all routes.

    Args:
        config: Server configuration. Loaded from file/environment if None.
        engine: Database engine. Created from config.database_url if None.
        provider: Identity provider. A GitHubDeviceFlowClient is built from
            config.github if None (which requires a client id).
        clock: Current-time source shared by all components (tests).
        run_cleanup: Start the periodic cleanup task with the app.

    Returns:
        Configured FastAPI application.

    Raises:
        ConfigurationError: If no provider is passed and GITHUB_CLIENT_ID is unset.
    """
    config = config or load_server_config()
    logger = get_system_logger()

    if config.log_dir:
        configure_system_logger_file(Path(config.log_dir).expanduser() / SYSTEM_LOG_FILE_NAME)

    owns_provider = provider is None
    if provider is None:
        config.require_provider()
        provider = GitHubDeviceFlowClient(config.github)

    owns_engine = engine is None
    if engine is None:
        engine = create_db_engine(config.database_url)
    init_schema(engine)

    users = UserDirectory(engine, clock=clock)
    sessions = SessionStore(
        engine,
        ttl=config.session_ttl,
        clock=clock,
        cache=ValidationCache(
            ttl_seconds=config.validation_cache_ttl_seconds,
            max_entries=config.validation_cache_max_entries,
        ),
    )
    coordinator = DeviceFlowCoordinator(
        engine,
        provider,
        users,
        sessions,
        clock=clock,
        retention=config.device_flow_retention,
    )
    scheduler = CleanupScheduler(sessions, coordinator, interval_seconds=config.cleanup_interval_seconds)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if run_cleanup:
            await scheduler.start()
        logger.info(
            {
                "event": "server_started",
                "message": f"Auth server ready (sessions live {config.session_ttl_days} days)",
            }
        )
        try:
            yield
        finally:
            await scheduler.stop()
            if owns_provider and isinstance(provider, GitHubDeviceFlowClient):
                provider.close()
            if owns_engine:
                engine.dispose()

    app = FastAPI(
        title="fido-auth",
        description="Session and device-flow authentication API",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )

    app.state.config = config
    app.state.engine = engine
    app.state.users = users
    app.state.sessions = sessions
    app.state.device_flow = coordinator
    app.state.cleanup = scheduler

    app.add_middleware(
        RateLimitMiddleware,
        limiter=TokenRateLimiter(
            max_requests=config.rate_limit_requests,
            window_seconds=config.rate_limit_window_seconds,
        ),
    )

    # Register exception handlers for structured error responses
    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(FidoAuthError, fido_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)

    app.include_router(health.router, tags=["health"])
    app.include_router(auth.router, prefix="/auth", tags=["auth"])

    return app
