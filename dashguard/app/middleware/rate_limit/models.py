"""Rate limiting data models.

This module contains dataclasses for rate limit configuration, counter
state and check results.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from dashguard.app.exceptions import RateLimitConfigError

KeyGenerator = Callable[[Any], str]
SkipPredicate = Callable[[Any], bool]
LimitReachedHook = Callable[[Any, str], Awaitable[None]]

BURST_WINDOW_FACTOR = 2
BURST_KEY_SUFFIX = ":burst"


@dataclass(frozen=True)
class RateLimitConfig:
    """Per call site rate limit configuration.

    Attributes:
        window_seconds: Length of the fixed window
        max: Requests allowed per window
        burst_max: Ceiling of the secondary burst counter, whose window is
            twice as long. Must be >= max when set.
        key_generator: Maps the caller identity to a key
        name: Namespace prefix so call sites sharing a store never collide
        skip: Predicate exempting an identity from counting
        on_limit_reached: Awaited with (identity, key) on rejection
    """
    window_seconds: float
    max: int
    burst_max: Optional[int] = None
    key_generator: Optional[KeyGenerator] = None
    name: Optional[str] = None
    skip: Optional[SkipPredicate] = None
    on_limit_reached: Optional[LimitReachedHook] = None

    def __post_init__(self) -> None:
        if isinstance(self.max, bool) or not isinstance(self.max, int) or self.max <= 0:
            raise RateLimitConfigError(f"max must be a positive integer, got {self.max!r}")
        if isinstance(self.window_seconds, bool) or not isinstance(self.window_seconds, (int, float)) \
                or self.window_seconds <= 0:
            raise RateLimitConfigError(
                f"window_seconds must be positive, got {self.window_seconds!r}"
            )
        if self.burst_max is not None:
            if isinstance(self.burst_max, bool) or not isinstance(self.burst_max, int):
                raise RateLimitConfigError(f"burst_max must be an integer, got {self.burst_max!r}")
            if self.burst_max < self.max:
                raise RateLimitConfigError(
                    f"burst_max ({self.burst_max}) must be >= max ({self.max})"
                )

    @property
    def burst_window_seconds(self) -> float:
        return self.window_seconds * BURST_WINDOW_FACTOR


@dataclass
class RateLimitEntry:
    """Fixed window counter state for one key."""
    count: int = 0
    window_start: float = field(default_factory=time.time)

    def is_expired(self, now: float, window_seconds: float) -> bool:
        return now - self.window_start >= window_seconds


@dataclass
class RateLimitResult:
    """Result of a rate limit check.

    ``reset`` is the epoch timestamp (seconds) at which the window ends.
    ``retry_after`` is whole seconds; see RateLimiter for when it is set.
    """
    success: bool
    limit: int
    remaining: int
    reset: float
    retry_after: Optional[int] = None
    burst: bool = False

    @property
    def reset_at(self) -> datetime:
        return datetime.fromtimestamp(self.reset, tz=timezone.utc)

    def to_headers(self, standard: bool = True, legacy: bool = False) -> Dict[str, str]:
        """Render IETF RateLimit-* and/or legacy X-RateLimit-* headers."""
        headers: Dict[str, str] = {}
        if standard:
            headers["RateLimit-Limit"] = str(self.limit)
            headers["RateLimit-Remaining"] = str(self.remaining)
            headers["RateLimit-Reset"] = self.reset_at.isoformat()
        if legacy:
            headers["X-RateLimit-Limit"] = str(self.limit)
            headers["X-RateLimit-Remaining"] = str(self.remaining)
            headers["X-RateLimit-Reset"] = str(int(self.reset))
        if self.retry_after is not None and not self.success:
            headers["Retry-After"] = str(self.retry_after)
        return headers
