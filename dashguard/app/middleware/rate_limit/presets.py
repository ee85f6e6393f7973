"""Named rate limit presets for the dashboard's route families."""

import math
from dataclasses import replace
from typing import Dict, Optional

from dashguard.app.core.config import settings
from dashguard.app.middleware.rate_limit.models import RateLimitConfig

MINUTE = 60

RATE_LIMIT_PRESETS: Dict[str, RateLimitConfig] = {
    # Global limit; max is overridden by RATE_LIMIT_REQUESTS_PER_MINUTE
    "global": RateLimitConfig(window_seconds=MINUTE, max=60, name="global"),
    # Strict limit for sign-in and session endpoints
    "auth": RateLimitConfig(window_seconds=15 * MINUTE, max=5, name="auth"),
    "api": RateLimitConfig(window_seconds=MINUTE, max=100, name="api"),
    "search": RateLimitConfig(window_seconds=MINUTE, max=30, name="search"),
    # Reconciliation runs are expensive
    "reconciliation": RateLimitConfig(window_seconds=5 * MINUTE, max=5, name="reconciliation"),
    "premium_reconciliation": RateLimitConfig(
        window_seconds=15 * MINUTE, max=2, name="premium_reconciliation"
    ),
}

# Longest prefix wins, so order from most to least specific
_PATH_PREFIXES = (
    ("/api/reconciliation/premium", "premium_reconciliation"),
    ("/api/reconciliation", "reconciliation"),
    ("/api/auth", "auth"),
    ("/api/search", "search"),
    ("/api/", "api"),
)


def preset_name_for_path(path: str) -> str:
    for prefix, name in _PATH_PREFIXES:
        if path.startswith(prefix):
            return name
    return "global"


def get_preset(name: str, burst_multiplier: Optional[float] = None) -> RateLimitConfig:
    """Return the preset with settings overrides and its burst ceiling applied.

    Args:
        name: Preset name from RATE_LIMIT_PRESETS
        burst_multiplier: burst_max = ceil(max * multiplier); None uses
            settings.rate_limit_burst_multiplier, 0 disables the burst

    Raises:
        KeyError: If the preset does not exist
    """
    config = RATE_LIMIT_PRESETS[name]
    if name == "global":
        config = replace(config, max=settings.rate_limit_requests_per_minute)

    multiplier = (
        burst_multiplier if burst_multiplier is not None
        else settings.rate_limit_burst_multiplier
    )
    if multiplier:
        config = replace(config, burst_max=math.ceil(config.max * multiplier))
    return config


def preset_for_path(path: str, burst_multiplier: Optional[float] = None) -> RateLimitConfig:
    return get_preset(preset_name_for_path(path), burst_multiplier)
