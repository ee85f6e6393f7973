"""Core utilities for the DashGuard application."""

from dashguard.app.core.config import settings
from dashguard.app.core.logging import get_logger, setup_logging
from dashguard.app.core.security import create_device_fingerprint, hash_identifier

__all__ = [
    "settings",
    "get_logger",
    "setup_logging",
    "create_device_fingerprint",
    "hash_identifier",
]
