"""Middleware package for DashGuard."""

from dashguard.app.middleware.rate_limit import RateLimitMiddleware, endpoint_rate_limit
from dashguard.app.middleware.request_id import RequestIdMiddleware, get_request_id

__all__ = [
    "RateLimitMiddleware",
    "RequestIdMiddleware",
    "endpoint_rate_limit",
    "get_request_id",
]
