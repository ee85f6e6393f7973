"""Rate limiter decision point.

Wraps a counter store and turns raw counts into allow/deny decisions with
quota telemetry. Instances are created explicitly by the application
factory (or by tests) and passed to whoever needs them.
"""

import asyncio
import math
import time
from typing import Any, Callable, Optional

from dashguard.app.core.config import settings
from dashguard.app.core.logging import get_logger
from dashguard.app.exceptions import CounterStoreUnavailable
from dashguard.app.middleware.rate_limit.backends import CounterStore, InMemoryCounterStore
from dashguard.app.middleware.rate_limit.models import (
    BURST_KEY_SUFFIX,
    RateLimitConfig,
    RateLimitResult,
)

logger = get_logger(__name__)


def default_key_generator(identity: Any) -> str:
    """Key by user when the identity carries one, else by client address.

    Strings are used verbatim so callers can pass a precomputed key.
    """
    if isinstance(identity, str):
        return identity
    user_id = getattr(identity, "user_id", None)
    if user_id:
        return f"user:{user_id}"
    ip_address = getattr(identity, "ip_address", None) or "unknown"
    return f"ip:{ip_address}"


def _seconds_until(reset: float, now: float) -> int:
    """Whole seconds until reset, never less than one."""
    return max(1, math.ceil(reset - now))


class RateLimiter:
    """Fixed window rate limiter with a secondary burst allowance.

    ``limit()`` enforces ``max`` requests per ``window_seconds``.
    ``handle_burst()`` additionally lets a caller that exhausted the primary
    window through, up to ``burst_max`` extra requests per doubled window,
    counted on a separate ``<key>:burst`` counter.
    """

    def __init__(
        self,
        store: Optional[CounterStore] = None,
        clock: Callable[[], float] = time.time,
        fail_closed: Optional[bool] = None,
    ):
        """Initialize rate limiter.

        Args:
            store: Counter store backend (in-memory when omitted)
            clock: Source of the current epoch time in seconds
            fail_closed: Deny when the store is unreachable
                (None = settings.rate_limit_fail_closed)
        """
        self._clock = clock
        self._store = store if store is not None else InMemoryCounterStore(clock=clock)
        self._fail_closed = (
            fail_closed if fail_closed is not None else settings.rate_limit_fail_closed
        )

    @property
    def store(self) -> CounterStore:
        return self._store

    @staticmethod
    def build_key(identity: Any, config: RateLimitConfig) -> str:
        generator = config.key_generator or default_key_generator
        key = generator(identity)
        return f"{config.name}:{key}" if config.name else key

    async def limit(self, identity: Any, config: RateLimitConfig) -> RateLimitResult:
        """Count one request against the primary window.

        Returns:
            RateLimitResult; ``retry_after`` is only set when rejected
        """
        result, key = await self._limit(identity, config)
        if not result.success and config.on_limit_reached is not None:
            await config.on_limit_reached(identity, key)
        return result

    async def handle_burst(self, identity: Any, config: RateLimitConfig) -> RateLimitResult:
        """Check the primary window, falling back to the burst allowance.

        When the primary window allows the request its result is returned and
        the burst counter is untouched. Otherwise the burst counter is
        charged; a burst admission carries ``burst=True`` and always reports
        ``retry_after`` as the time until the burst window resets. When the
        burst allowance is exhausted too, the primary rejection is returned.
        """
        result, key = await self._limit(identity, config)
        if result.success or config.burst_max is None:
            if not result.success and config.on_limit_reached is not None:
                await config.on_limit_reached(identity, key)
            return result

        burst_result = await self._check(
            key + BURST_KEY_SUFFIX,
            config.burst_max,
            config.burst_window_seconds,
        )
        if burst_result.success:
            burst_result.burst = True
            burst_result.retry_after = _seconds_until(burst_result.reset, self._clock())
            return burst_result

        if config.on_limit_reached is not None:
            await config.on_limit_reached(identity, key)
        return result

    async def _limit(self, identity: Any, config: RateLimitConfig) -> tuple[RateLimitResult, str]:
        key = self.build_key(identity, config)
        if config.skip is not None and config.skip(identity):
            return RateLimitResult(
                success=True,
                limit=config.max,
                remaining=config.max,
                reset=self._clock() + config.window_seconds,
            ), key
        return await self._check(key, config.max, config.window_seconds), key

    async def _check(self, key: str, limit: int, window_seconds: float) -> RateLimitResult:
        try:
            entry = await self._store.increment(key, window_seconds)
        except CounterStoreUnavailable:
            return self._handle_store_failure(limit, window_seconds)

        now = self._clock()
        reset = entry.window_start + window_seconds
        success = entry.count <= limit
        return RateLimitResult(
            success=success,
            limit=limit,
            remaining=max(0, limit - entry.count),
            reset=reset,
            retry_after=None if success else _seconds_until(reset, now),
        )

    def _handle_store_failure(self, limit: int, window_seconds: float) -> RateLimitResult:
        """Apply the configured fail-open/fail-closed policy."""
        reset = self._clock() + window_seconds
        if self._fail_closed:
            logger.warning("Rate limiting fail-closed triggered: counter store unavailable")
            return RateLimitResult(
                success=False,
                limit=limit,
                remaining=0,
                reset=reset,
                retry_after=_seconds_until(reset, self._clock()),
            )

        logger.warning(
            "Rate limiting fail-open triggered: counter store unavailable. "
            "Request allowed without rate limit check."
        )
        return RateLimitResult(success=True, limit=limit, remaining=limit, reset=reset)

    async def sweep(self) -> int:
        """Remove long-expired counters from the store."""
        return await self._store.sweep()

    async def reset(self, key: Optional[str] = None) -> None:
        await self._store.reset(key)

    async def run_sweeper(self, interval_seconds: float) -> None:
        """Sweep the store forever; run as a background task and cancel it."""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                removed = await self.sweep()
            except Exception:
                logger.exception("Rate limit sweep failed")
                continue
            if removed:
                logger.debug(f"Rate limit sweep removed {removed} expired counters")
