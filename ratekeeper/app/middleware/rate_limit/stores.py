"""Counter stores backing the rate limiters.

A store keeps one counter (fixed window) or one request log (sliding window)
per key and mutates it atomically. Limiters never talk to Redis or to the
process memory directly; they go through a CounterStore so a single backend
can serve every scope.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Optional

import redis
import redis.asyncio as aioredis

from ratekeeper.app.core.config import settings
from ratekeeper.app.core.logging import get_logger
from ratekeeper.app.exceptions import StoreErrorKind, StoreUnavailableError
from ratekeeper.app.middleware.rate_limit.models import WindowCounter, now_ms

logger = get_logger(__name__)


class CounterStore(ABC):
    """Abstract base class for counter stores."""

    @abstractmethod
    async def increment_and_get_window(self, key: str, window_ms: int) -> WindowCounter:
        """Atomically count one request against the fixed window for key.

        Starts a new window with count 1 when none is active or the previous
        one has expired.

        Raises:
            StoreUnavailableError: If the backend cannot be reached
        """

    @abstractmethod
    async def record_in_log(self, key: str, window_ms: int, limit: int) -> WindowCounter:
        """Atomically record one request in the sliding log for key.

        Entries older than window_ms are dropped first. The request is only
        recorded when it fits under limit; a rejected request is reported as
        ``count == limit + 1``. ``window_start_ms`` is the oldest entry kept.

        Raises:
            StoreUnavailableError: If the backend cannot be reached
        """

    @abstractmethod
    async def reset(self, key: str) -> None:
        """Clear the counter and log for key."""

    @abstractmethod
    async def ping(self) -> bool:
        """Check the store is reachable.

        Raises:
            StoreUnavailableError: If the backend cannot be reached
        """

    async def cleanup(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        return 0

    async def close(self) -> None:
        """Release backend resources."""


@dataclass
class _WindowEntry:
    """Fixed window state for one key."""
    count: int
    window_start_ms: int
    window_ms: int


@dataclass
class _LogEntry:
    """Sliding window request log for one key."""
    window_ms: int
    timestamps: Deque[int] = field(default_factory=deque)


class InMemoryCounterStore(CounterStore):
    """Process-local counter store.

    Mutations are serialised by an asyncio.Lock, which is enough inside one
    event loop. Counts are NOT shared between worker processes: running N
    workers multiplies every limit by N. Use RedisCounterStore for that.

    Memory is bounded with an LRU policy: when more than max_entries keys are
    tracked the oldest 20% are evicted.
    """

    DEFAULT_MAX_ENTRIES = 10000

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], int] = now_ms,
    ):
        """Initialize the store.

        Args:
            max_entries: Maximum number of keys to keep (LRU eviction)
            clock: Time source returning UNIX time in milliseconds
        """
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._max_entries = max_entries
        self._clock = clock
        self._windows: OrderedDict[str, _WindowEntry] = OrderedDict()
        self._logs: OrderedDict[str, _LogEntry] = OrderedDict()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._windows) + len(self._logs)

    def _enforce_lru_limit(self, storage: OrderedDict) -> None:
        if len(storage) >= self._max_entries:
            remove_count = max(1, int(self._max_entries * 0.2))
            for _ in range(min(remove_count, len(storage))):
                storage.popitem(last=False)

    async def increment_and_get_window(self, key: str, window_ms: int) -> WindowCounter:
        async with self._lock:
            now = self._clock()
            entry = self._windows.get(key)

            if entry is None or now - entry.window_start_ms >= entry.window_ms:
                if entry is None:
                    self._enforce_lru_limit(self._windows)
                entry = _WindowEntry(count=0, window_start_ms=now, window_ms=window_ms)
                self._windows[key] = entry
            else:
                self._windows.move_to_end(key)

            entry.count += 1
            return WindowCounter(
                count=entry.count,
                window_start_ms=entry.window_start_ms,
                window_ms=entry.window_ms,
            )

    async def record_in_log(self, key: str, window_ms: int, limit: int) -> WindowCounter:
        async with self._lock:
            now = self._clock()
            entry = self._logs.get(key)

            if entry is None:
                self._enforce_lru_limit(self._logs)
                entry = _LogEntry(window_ms=window_ms)
                self._logs[key] = entry
            else:
                self._logs.move_to_end(key)

            timestamps = entry.timestamps
            while timestamps and now - timestamps[0] >= window_ms:
                timestamps.popleft()

            if len(timestamps) < limit:
                timestamps.append(now)
                count = len(timestamps)
            else:
                count = limit + 1

            return WindowCounter(
                count=count,
                window_start_ms=timestamps[0] if timestamps else now,
                window_ms=window_ms,
            )

    async def reset(self, key: str) -> None:
        async with self._lock:
            self._windows.pop(key, None)
            self._logs.pop(key, None)

    async def ping(self) -> bool:
        return True

    async def cleanup(self) -> int:
        """Clean up expired windows and empty logs."""
        async with self._lock:
            now = self._clock()

            expired_windows = [
                key for key, entry in self._windows.items()
                if now - entry.window_start_ms >= entry.window_ms
            ]
            for key in expired_windows:
                del self._windows[key]

            expired_logs = [
                key for key, entry in self._logs.items()
                if not entry.timestamps or now - entry.timestamps[-1] >= entry.window_ms
            ]
            for key in expired_logs:
                del self._logs[key]

            return len(expired_windows) + len(expired_logs)


# INCR and PEXPIRE run in one script so a key can never be left counting
# without an expiry, even if the client dies between the two commands.
FIXED_WINDOW_SCRIPT = """
    local count = redis.call('INCR', KEYS[1])
    if count == 1 then
        redis.call('PEXPIRE', KEYS[1], ARGV[1])
    end
    local ttl = redis.call('PTTL', KEYS[1])
    if ttl < 0 then
        redis.call('PEXPIRE', KEYS[1], ARGV[1])
        ttl = tonumber(ARGV[1])
    end
    return {count, ttl}
"""

# Timestamps come from the Redis server clock so every process agrees on
# the log ordering. A rejected request is not added to the log.
SLIDING_WINDOW_SCRIPT = """
    local key = KEYS[1]
    local window = tonumber(ARGV[1])
    local limit = tonumber(ARGV[2])
    local member = ARGV[3]

    local t = redis.call('TIME')
    local now = tonumber(t[1]) * 1000 + math.floor(tonumber(t[2]) / 1000)

    redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
    local count = redis.call('ZCARD', key)
    if count < limit then
        redis.call('ZADD', key, now, member)
        count = count + 1
    else
        count = limit + 1
    end
    redis.call('PEXPIRE', key, window)

    local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
    local start = now
    if oldest[2] then
        start = tonumber(oldest[2])
    end
    return {count, start, now}
"""


def classify_store_error(exc: BaseException) -> StoreErrorKind:
    """Map a driver exception onto a StoreErrorKind."""
    if isinstance(exc, (redis.TimeoutError, asyncio.TimeoutError, TimeoutError)):
        return StoreErrorKind.TIMEOUT
    if isinstance(exc, (redis.ConnectionError, ConnectionError, OSError)):
        return StoreErrorKind.CONNECTION
    if isinstance(exc, redis.ResponseError):
        return StoreErrorKind.RESPONSE
    return StoreErrorKind.UNEXPECTED


class RedisCounterStore(CounterStore):
    """Redis-backed counter store shared by every process of the service.

    Fixed windows use INCR with a PEXPIRE set on the first hit, sliding
    windows a sorted set per key. Both run as Lua scripts so each decision is
    a single atomic operation on the server. Keys expire on their own, so a
    request interrupted mid-flight can at worst leave a counter that heals
    when its window ends.
    """

    def __init__(
        self,
        redis_client: Optional[Any] = None,
        redis_url: Optional[str] = None,
        timeout: Optional[float] = None,
        clock: Callable[[], int] = now_ms,
    ):
        """Initialize Redis counter store.

        Args:
            redis_client: Optional Redis client instance
            redis_url: Redis connection URL
            timeout: Seconds before a call is treated as unavailable
            clock: Local time source returning UNIX time in milliseconds
        """
        self._redis = redis_client
        self._redis_url = redis_url or settings.redis_url
        self._timeout = timeout or settings.rate_limit_store_timeout
        self._clock = clock
        self._needs_reconnect = False

    def _get_redis(self) -> Any:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = aioredis.from_url(
                self._redis_url,
                socket_timeout=settings.redis_socket_timeout,
                socket_connect_timeout=settings.redis_socket_timeout,
            )
        return self._redis

    async def _reconnect_if_needed(self, client: Any) -> None:
        if not self._needs_reconnect:
            return
        self._needs_reconnect = False
        logger.info("Dropping pooled Redis connections after connection failure")
        await client.connection_pool.disconnect()

    async def _execute(self, operation: str, call: Callable[[Any], Any]) -> Any:
        """Run one Redis call under the store timeout and classify failures."""
        client = self._get_redis()
        try:
            await self._reconnect_if_needed(client)
            return await asyncio.wait_for(call(client), timeout=self._timeout)
        except (redis.RedisError, asyncio.TimeoutError, OSError) as e:
            kind = classify_store_error(e)
            if kind.should_reconnect:
                self._needs_reconnect = True
            logger.warning(
                f"Redis {operation} failed: {type(e).__name__}",
                extra={"error_kind": kind.value},
            )
            raise StoreUnavailableError(kind, f"Redis {operation} failed: {e}") from e

    async def increment_and_get_window(self, key: str, window_ms: int) -> WindowCounter:
        result = await self._execute(
            "increment",
            lambda client: client.eval(FIXED_WINDOW_SCRIPT, 1, key, window_ms),
        )
        try:
            count, ttl = int(result[0]), int(result[1])
        except (TypeError, ValueError, IndexError) as e:
            raise StoreUnavailableError(
                StoreErrorKind.RESPONSE, f"Unexpected script reply: {result!r}"
            ) from e

        now = self._clock()
        ttl = min(max(ttl, 0), window_ms)
        return WindowCounter(
            count=count,
            window_start_ms=now - (window_ms - ttl),
            window_ms=window_ms,
        )

    async def record_in_log(self, key: str, window_ms: int, limit: int) -> WindowCounter:
        member = uuid.uuid4().hex
        result = await self._execute(
            "log",
            lambda client: client.eval(SLIDING_WINDOW_SCRIPT, 1, key, window_ms, limit, member),
        )
        try:
            count, start, server_now = int(result[0]), int(result[1]), int(result[2])
        except (TypeError, ValueError, IndexError) as e:
            raise StoreUnavailableError(
                StoreErrorKind.RESPONSE, f"Unexpected script reply: {result!r}"
            ) from e

        # Translate the server timestamp into the local clock
        now = self._clock()
        return WindowCounter(
            count=count,
            window_start_ms=now - (server_now - start),
            window_ms=window_ms,
        )

    async def reset(self, key: str) -> None:
        await self._execute("reset", lambda client: client.delete(key))

    async def ping(self) -> bool:
        return bool(await self._execute("ping", lambda client: client.ping()))

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


def create_counter_store(use_redis: Optional[bool] = None) -> CounterStore:
    """Build the store selected by settings.

    Args:
        use_redis: Force Redis usage (None = auto-detect from settings)
    """
    should_use_redis = use_redis if use_redis is not None else settings.redis_enabled
    if should_use_redis:
        logger.info("Using Redis rate limit store")
        return RedisCounterStore()
    logger.info("Using in-memory rate limit store (single process only)")
    return InMemoryCounterStore(max_entries=settings.rate_limit_max_entries)
