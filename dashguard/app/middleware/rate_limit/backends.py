"""Counter store backends for the rate limiter.

A counter store tracks a request count per key inside a fixed window. The
in-memory store is the single-instance baseline; the Redis store is a
drop-in replacement behind the same ``increment`` interface for
deployments with several processes.
"""

import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any, Callable, Optional

import redis
import redis.asyncio as aioredis

from dashguard.app.core.config import settings
from dashguard.app.core.logging import get_logger
from dashguard.app.exceptions import CounterStoreUnavailable
from dashguard.app.middleware.rate_limit.models import RateLimitEntry

logger = get_logger(__name__)

Clock = Callable[[], float]


class CounterStore(ABC):
    """Abstract base class for counter store backends."""

    @abstractmethod
    async def increment(self, key: str, window_seconds: float) -> RateLimitEntry:
        """Count one request for key and return the window state.

        Starts a fresh window ``{count: 1, window_start: now}`` when no entry
        exists or the current one is at least ``window_seconds`` old.

        Args:
            key: Namespaced rate limit key
            window_seconds: Window length for this key

        Returns:
            A snapshot of the entry after the increment
        """
        pass

    @abstractmethod
    async def sweep(self) -> int:
        """Remove entries whose window has long expired.

        Returns:
            Number of entries removed
        """
        pass

    @abstractmethod
    async def reset(self, key: Optional[str] = None) -> None:
        """Forget one key, or every key when key is None."""
        pass


class InMemoryCounterStore(CounterStore):
    """Process-local fixed window counter store.

    Memory optimization:
    - Uses OrderedDict for LRU behaviour
    - Limits max entries to prevent unbounded growth from one-off keys
    - ``sweep()`` drops entries idle for several windows

    The increment is a critical section without any await inside it, guarded
    by a threading lock, so concurrent callers on the event loop or on worker
    threads never lose an update.
    """

    DEFAULT_MAX_ENTRIES = 10000
    EVICTION_FRACTION = 0.2
    SWEEP_GRACE_WINDOWS = 2

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Clock = time.time,
    ):
        """Initialize the store.

        Args:
            max_entries: Maximum number of keys to keep (LRU eviction)
            clock: Source of the current epoch time in seconds
        """
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, RateLimitEntry] = OrderedDict()
        # Window length last used per key, needed by sweep()
        self._windows: dict[str, float] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def _enforce_lru_limit(self) -> None:
        """Evict the least recently used 20% once the bound is reached."""
        if len(self._entries) < self._max_entries:
            return
        remove_count = max(1, int(self._max_entries * self.EVICTION_FRACTION))
        for _ in range(min(remove_count, len(self._entries))):
            key, _ = self._entries.popitem(last=False)
            self._windows.pop(key, None)

    def increment_sync(self, key: str, window_seconds: float) -> RateLimitEntry:
        with self._lock:
            now = self._clock()
            entry = self._entries.get(key)

            if entry is None:
                self._enforce_lru_limit()
                entry = RateLimitEntry(count=1, window_start=now)
                self._entries[key] = entry
            elif entry.is_expired(now, window_seconds):
                entry.count = 1
                entry.window_start = now
                self._entries.move_to_end(key)
            else:
                entry.count += 1
                self._entries.move_to_end(key)

            self._windows[key] = window_seconds
            return RateLimitEntry(count=entry.count, window_start=entry.window_start)

    async def increment(self, key: str, window_seconds: float) -> RateLimitEntry:
        return self.increment_sync(key, window_seconds)

    async def sweep(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [
                key for key, entry in self._entries.items()
                if now - entry.window_start
                >= self._windows.get(key, 0) * (1 + self.SWEEP_GRACE_WINDOWS)
            ]
            for key in expired:
                del self._entries[key]
                self._windows.pop(key, None)
            return len(expired)

    async def reset(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._entries.clear()
                self._windows.clear()
            else:
                self._entries.pop(key, None)
                self._windows.pop(key, None)

    async def get(self, key: str) -> Optional[RateLimitEntry]:
        """Peek at an entry without counting a request."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            return RateLimitEntry(count=entry.count, window_start=entry.window_start)


# Atomic increment-and-expire. The key's TTL is the window: the first INCR of
# a window sets it, so the window start is recoverable from the remaining TTL.
INCREMENT_SCRIPT = """
    local key = KEYS[1]
    local window_ms = tonumber(ARGV[1])

    local count = redis.call('INCR', key)
    if count == 1 then
        redis.call('PEXPIRE', key, window_ms)
    end

    local ttl = redis.call('PTTL', key)
    if ttl < 0 then
        -- Key lost its expiry (e.g. restored from a snapshot); restart the window
        redis.call('PEXPIRE', key, window_ms)
        ttl = window_ms
    end

    return {count, ttl}
"""


class RedisCounterStore(CounterStore):
    """Redis-based shared counter store.

    Uses a Lua script so the increment and the window expiry happen in one
    atomic step across every process talking to the same Redis.
    """

    def __init__(
        self,
        redis_client: Optional[Any] = None,
        redis_url: Optional[str] = None,
        key_prefix: str = "dashguard:ratelimit:",
        clock: Clock = time.time,
    ):
        """Initialize Redis counter store.

        Args:
            redis_client: Optional Redis client instance
            redis_url: Redis connection URL
            key_prefix: Prefix applied to every key
            clock: Source of the current epoch time in seconds
        """
        self._redis_url = redis_url or settings.redis_url
        self._redis = redis_client
        self._key_prefix = key_prefix
        self._clock = clock

    def _get_redis(self) -> Any:
        if self._redis is None:
            self._redis = aioredis.from_url(self._redis_url)
        return self._redis

    async def increment(self, key: str, window_seconds: float) -> RateLimitEntry:
        window_ms = max(1, int(window_seconds * 1000))
        try:
            client = self._get_redis()
            count, ttl_ms = await client.eval(
                INCREMENT_SCRIPT, 1, self._key_prefix + key, window_ms
            )
        except redis.ConnectionError as e:
            logger.error(f"Redis connection failed: {e}")
            raise CounterStoreUnavailable("Redis connection failed") from e
        except redis.TimeoutError as e:
            logger.warning(f"Redis timeout: {e}")
            raise CounterStoreUnavailable("Redis timeout") from e
        except redis.RedisError as e:
            logger.error(f"Redis error: {e}")
            raise CounterStoreUnavailable("Redis error") from e

        now = self._clock()
        elapsed = (window_ms - int(ttl_ms)) / 1000
        return RateLimitEntry(count=int(count), window_start=now - max(0.0, elapsed))

    async def sweep(self) -> int:
        """No-op for Redis (keys expire automatically)."""
        return 0

    async def reset(self, key: Optional[str] = None) -> None:
        client = self._get_redis()
        if key is not None:
            await client.delete(self._key_prefix + key)
            return
        async for found in client.scan_iter(match=self._key_prefix + "*"):
            await client.delete(found)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


def create_counter_store(use_redis: Optional[bool] = None) -> CounterStore:
    """Select the counter store backend.

    Args:
        use_redis: Force Redis usage (None = auto-detect from settings)

    Returns:
        RedisCounterStore when Redis is enabled, otherwise InMemoryCounterStore
    """
    should_use_redis = use_redis if use_redis is not None else settings.redis_enabled

    if should_use_redis:
        try:
            store = RedisCounterStore(redis_client=aioredis.from_url(settings.redis_url))
            logger.info("Using Redis counter store")
            return store
        except (redis.RedisError, ValueError) as e:
            logger.warning(f"Failed to initialize Redis counter store: {e}. Using in-memory.")

    logger.debug("Using in-memory counter store")
    return InMemoryCounterStore(max_entries=settings.rate_limit_max_entries)
