"""API endpoints package for DashGuard."""

from dashguard.app.api.sessions import router as sessions_router

__all__ = [
    "sessions_router",
]
