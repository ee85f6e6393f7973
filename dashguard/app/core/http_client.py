"""Shared HTTP client for outbound lookups.

The client is opened in the application lifespan and reused by every
request, so geolocation lookups share one connection pool.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx

from dashguard.app.core.config import settings


@asynccontextmanager
async def init_http_client() -> AsyncGenerator[httpx.AsyncClient, None]:
    """Create and yield the shared HTTP client, closing it on exit.

    Use it in the FastAPI lifespan:

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            async with init_http_client() as client:
                yield
    """
    limits = httpx.Limits(max_connections=50, max_keepalive_connections=10)
    timeout = httpx.Timeout(settings.geolocation_timeout, connect=settings.geolocation_timeout)

    client = httpx.AsyncClient(timeout=timeout, limits=limits)
    try:
        yield client
    finally:
        await client.aclose()
