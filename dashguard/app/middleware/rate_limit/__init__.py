"""Rate limiting middleware for the dashboard.

This module provides fixed window rate limiting with a burst allowance to
prevent abuse of the dashboard API. Counters live in memory or in Redis,
depending on settings.
"""

from typing import Awaitable, Callable, Optional, Sequence

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from dashguard.app.core.config import settings
from dashguard.app.core.logging import get_log_context, get_logger
from dashguard.app.core.security import get_client_ip, hash_identifier
from dashguard.app.exceptions import RateLimitExceededError

# Re-export models
from dashguard.app.middleware.rate_limit.models import (
    RateLimitConfig,
    RateLimitEntry,
    RateLimitResult,
)

# Re-export backends
from dashguard.app.middleware.rate_limit.backends import (
    CounterStore,
    InMemoryCounterStore,
    RedisCounterStore,
    create_counter_store,
)
from dashguard.app.middleware.rate_limit.limiter import RateLimiter, default_key_generator
from dashguard.app.middleware.rate_limit.presets import (
    RATE_LIMIT_PRESETS,
    get_preset,
    preset_for_path,
)
from dashguard.app.services.audit import AuditLog, detect_abuse_pattern, log_rate_limit_violation

logger = get_logger(__name__)

__all__ = [
    # Models
    "RateLimitConfig",
    "RateLimitEntry",
    "RateLimitResult",
    # Backends
    "CounterStore",
    "InMemoryCounterStore",
    "RedisCounterStore",
    "create_counter_store",
    # Main classes
    "RateLimiter",
    "RateLimitMiddleware",
    "default_key_generator",
    "endpoint_rate_limit",
    "client_key",
    # Presets
    "RATE_LIMIT_PRESETS",
    "get_preset",
    "preset_for_path",
]

DEFAULT_EXEMPT_PATHS = ("/health",)


def _request_user_id(request: Request) -> Optional[str]:
    # Only an identity set by an authenticating layer counts; client headers never do
    user_id = getattr(request.state, "user_id", None)
    return str(user_id) if user_id else None


def client_key(request: Request) -> str:
    """Get the rate limit key for a request.

    Uses the user id an outer authentication layer put on
    ``request.state`` if available, otherwise the client IP.
    Both are hashed so raw identifiers are never stored in memory or Redis.

    Args:
        request: FastAPI request object

    Returns:
        Rate limit key string (hashed, no sensitive data exposed)
    """
    user_id = _request_user_id(request)
    if user_id:
        return f"user:{hash_identifier(user_id)}"
    client_ip = get_client_ip(request, settings.rate_limit_trust_forwarded_for)
    return f"ip:{hash_identifier(client_ip)}"


def _rejection_response(result: RateLimitResult, retry_after: int) -> JSONResponse:
    headers = result.to_headers(legacy=True)
    headers["Retry-After"] = str(retry_after)
    return JSONResponse(
        status_code=429,
        content={
            "error": "rate_limit_exceeded",
            "message": "Too many requests. Please try again later.",
            "retry_after": retry_after,
        },
        headers=headers,
    )


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce rate limits on requests.

    The preset is chosen by path prefix. Requests are keyed per user when
    one is known, otherwise per client IP. Rejections are written to the
    audit log; clients that keep hitting the limit are locked out for
    ``abuse_lockout_seconds``.
    """

    def __init__(
        self,
        app,
        limiter: RateLimiter,
        audit: Optional[AuditLog] = None,
        enabled: Optional[bool] = None,
        exempt_paths: Sequence[str] = DEFAULT_EXEMPT_PATHS,
    ):
        super().__init__(app)
        self.limiter = limiter
        self.audit = audit
        self.enabled = enabled if enabled is not None else settings.rate_limit_enabled
        self.exempt_paths = tuple(exempt_paths)

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with rate limiting."""
        path = request.url.path
        if not self.enabled or path in self.exempt_paths:
            return await call_next(request)

        config = preset_for_path(path)
        key = client_key(request)
        result = await self.limiter.handle_burst(key, config)

        if not result.success:
            retry_after = await self._on_rejected(request, key, config)
            return _rejection_response(result, retry_after or result.retry_after or 1)

        response = await call_next(request)
        for name, value in result.to_headers().items():
            response.headers[name] = value
        return response

    async def _on_rejected(self, request: Request, key: str, config: RateLimitConfig) -> Optional[int]:
        """Audit the violation; return a lockout period when the client is abusive."""
        path = request.url.path
        user_id = _request_user_id(request)
        client_ip = get_client_ip(request, settings.rate_limit_trust_forwarded_for)
        log_extra = get_log_context(
            request_id=getattr(request.state, "request_id", None),
            user_id=user_id,
            client_ip=client_ip,
            path=path,
            method=request.method,
            rate_limit_key=f"{config.name}:{key}",
        )
        logger.warning(f"Rate limit exceeded for {config.name} preset", extra=log_extra)

        if self.audit is None:
            return None

        await log_rate_limit_violation(
            self.audit,
            endpoint=path,
            key=key,
            method=request.method,
            user_id=user_id,
            ip_address=client_ip,
            user_agent=request.headers.get("user-agent"),
        )
        if await detect_abuse_pattern(self.audit, user_id, client_ip, path):
            logger.warning("Abuse pattern detected, applying lockout", extra=log_extra)
            return settings.abuse_lockout_seconds
        return None


def endpoint_rate_limit(
    window_seconds: float,
    max: int,
    name: Optional[str] = None,
) -> Callable[[Request], Awaitable[RateLimitResult]]:
    """Create a FastAPI dependency enforcing a per-route limit.

    Uses the limiter stored on ``app.state.rate_limiter``.

    Example:
        @router.post("/export", dependencies=[Depends(endpoint_rate_limit(60, 3, "export"))])

    Raises:
        RateLimitConfigError: If the limit parameters are invalid
    """
    config = RateLimitConfig(window_seconds=window_seconds, max=max, name=name)

    async def dependency(request: Request) -> RateLimitResult:
        limiter: RateLimiter = request.app.state.rate_limiter
        result = await limiter.limit(client_key(request), config)
        if not result.success:
            raise RateLimitExceededError(retry_after=result.retry_after, limit=result.limit)
        return result

    return dependency
