import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from dashguard.app.api.sessions import router as sessions_router
from dashguard.app.core.config import settings
from dashguard.app.core.http_client import init_http_client
from dashguard.app.core.logging import get_logger, setup_logging
from dashguard.app.db.async_session import close_async_engine, get_async_session_maker, init_async_db
from dashguard.app.exceptions import (
    AuthenticationError,
    DashGuardException,
    RateLimitExceededError,
    ReauthenticationRequired,
)
from dashguard.app.middleware.rate_limit import RateLimiter, RateLimitMiddleware, create_counter_store
from dashguard.app.middleware.request_id import RequestIdMiddleware
from dashguard.app.services.audit import AuditLog, SqlAuditLog
from dashguard.app.services.geolocation import HttpGeolocationProvider
from dashguard.app.services.session_security import SessionSecurityService, SqlSessionStore


def create_app(
    limiter: Optional[RateLimiter] = None,
    audit_log: Optional[AuditLog] = None,
    session_service: Optional[SessionSecurityService] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Collaborators default to the database and settings backed
    implementations; tests pass their own.

    Returns:
        Configured FastAPI application instance
    """
    setup_logging()
    logger = get_logger(__name__)

    limiter = limiter or RateLimiter(create_counter_store())
    audit_log = audit_log or SqlAuditLog(get_async_session_maker())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Initialize the database, HTTP client and sweeper; tear them down on shutdown."""
        async with init_http_client() as http_client:
            if app.state.session_service is None:
                await init_async_db()
                geolocator = (
                    HttpGeolocationProvider(http_client) if settings.geolocation_enabled else None
                )
                app.state.session_service = SessionSecurityService(
                    SqlSessionStore(get_async_session_maker()),
                    app.state.audit_log,
                    geolocator=geolocator,
                )

            sweeper = asyncio.create_task(
                limiter.run_sweeper(settings.rate_limit_sweep_interval_seconds)
            )
            logger.info(
                "Application startup complete",
                extra={
                    "rate_limit_enabled": settings.rate_limit_enabled,
                    "redis_enabled": settings.redis_enabled,
                    "geolocation_enabled": settings.geolocation_enabled,
                },
            )

            yield

            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper

        close = getattr(limiter.store, "close", None)
        if close is not None:
            await close()
        await close_async_engine()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="DashGuard",
        description="Rate limiting and session security for the customer dashboard",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.rate_limiter = limiter
    app.state.audit_log = audit_log
    app.state.session_service = session_service

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(RateLimitMiddleware, limiter=limiter, audit=audit_log)
    app.add_middleware(RequestIdMiddleware)

    app.include_router(sessions_router)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok"}

    @app.exception_handler(ReauthenticationRequired)
    async def reauthentication_handler(request: Request, exc: ReauthenticationRequired) -> JSONResponse:
        """Handle ReauthenticationRequired and return HTTP 403 response."""
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_response(),
            headers={"Cache-Control": "no-store"},
        )

    @app.exception_handler(RateLimitExceededError)
    async def rate_limit_handler(request: Request, exc: RateLimitExceededError) -> JSONResponse:
        """Handle RateLimitExceededError and return HTTP 429 response."""
        headers = {"Retry-After": str(exc.retry_after)} if exc.retry_after else None
        return JSONResponse(status_code=exc.status_code, content=exc.to_response(), headers=headers)

    @app.exception_handler(AuthenticationError)
    async def auth_error_handler(request: Request, exc: AuthenticationError) -> JSONResponse:
        """Handle AuthenticationError and return HTTP 401 response."""
        return JSONResponse(
            status_code=401,
            content={"error": "authentication_required", "message": exc.detail},
            headers={"WWW-Authenticate": "Bearer"},
        )

    @app.exception_handler(DashGuardException)
    async def dashguard_error_handler(request: Request, exc: DashGuardException) -> JSONResponse:
        """Handle remaining DashGuard errors by their declared status code."""
        request_id = getattr(request.state, "request_id", "unknown")
        logger.error(
            f"{type(exc).__name__}: {exc.message} [request_id={request_id}]",
            extra={"request_id": request_id, "path": request.url.path},
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_response())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        Never returns a traceback to the client; details go to the server log.
        """
        request_id = getattr(request.state, "request_id", "unknown")
        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={
                "request_id": request_id,
                "exception_type": type(exc).__name__,
            },
        )
        content = {
            "error": "internal_error",
            "message": str(exc) if settings.debug else "Internal server error",
            "request_id": request_id,
        }
        return JSONResponse(status_code=500, content=content)

    return app


# Create the application instance
app = create_app()
