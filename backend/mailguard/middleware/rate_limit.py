from __future__ import annotations

import asyncio
import contextlib
import logging
import math
import secrets
import time
from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Generic, Optional, Protocol, TypeVar

from redis.exceptions import RedisError

from mailguard.config import Settings
from mailguard.redis_client import RedisConnection
from mailguard.schemas.security import RateLimitDecision

logger = logging.getLogger(__name__)

T = TypeVar("T")

KEY_PREFIX = "rate_limit:"


def _wall_clock_ms() -> float:
    return time.time() * 1000


@dataclass(frozen=True)
class StoreResult(Generic[T]):
    """Outcome of one window-store operation. Stores never raise."""

    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None

    @classmethod
    def success(cls, value: T) -> "StoreResult[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: str) -> "StoreResult[T]":
        return cls(ok=False, error=error)


class WindowStore(Protocol):
    name: str

    async def record(
        self, identifier: str, now_ms: float, window_ms: int, limit: int
    ) -> StoreResult[int]:
        """Return the in-window count seen before this attempt.

        The attempt is recorded only when that count is below ``limit``.
        """

    async def count(self, identifier: str, now_ms: float, window_ms: int) -> StoreResult[int]:
        ...

    async def oldest(
        self, identifier: str, now_ms: float, window_ms: int
    ) -> StoreResult[Optional[float]]:
        ...

    def sweep(self, now_ms: float, window_ms: int) -> int:
        ...


class MemoryWindowStore:
    """Process-local sliding windows. Only correct for a single process."""

    name = "memory"

    def __init__(self) -> None:
        self._requests: dict[str, list[float]] = defaultdict(list)
        self._lock = Lock()

    def _live(self, identifier: str, window_start: float) -> list[float]:
        # Caller holds the lock
        timestamps = [t for t in self._requests.get(identifier, ()) if t > window_start]
        if timestamps:
            self._requests[identifier] = timestamps
        else:
            self._requests.pop(identifier, None)
        return timestamps

    async def record(
        self, identifier: str, now_ms: float, window_ms: int, limit: int
    ) -> StoreResult[int]:
        with self._lock:
            timestamps = self._live(identifier, now_ms - window_ms)
            current = len(timestamps)
            if current < limit:
                self._requests[identifier] = timestamps + [now_ms]
            return StoreResult.success(current)

    async def count(self, identifier: str, now_ms: float, window_ms: int) -> StoreResult[int]:
        with self._lock:
            return StoreResult.success(len(self._live(identifier, now_ms - window_ms)))

    async def oldest(
        self, identifier: str, now_ms: float, window_ms: int
    ) -> StoreResult[Optional[float]]:
        with self._lock:
            timestamps = self._live(identifier, now_ms - window_ms)
            return StoreResult.success(timestamps[0] if timestamps else None)

    def sweep(self, now_ms: float, window_ms: int) -> int:
        """Evict identifiers whose timestamps have all expired."""
        window_start = now_ms - window_ms
        with self._lock:
            expired = [
                key for key, timestamps in self._requests.items()
                if not any(t > window_start for t in timestamps)
            ]
            for key in expired:
                del self._requests[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._requests)


# Trim, count and conditionally add in one step; denied attempts never touch the set
RECORD_SCRIPT = """
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
redis.call('ZREMRANGEBYSCORE', KEYS[1], 0, now - window)
local current = redis.call('ZCARD', KEYS[1])
if current < limit then
    redis.call('ZADD', KEYS[1], now, ARGV[4])
    redis.call('EXPIRE', KEYS[1], ARGV[5])
end
return current
"""


class RedisWindowStore:
    """Sliding windows kept in Redis sorted sets, scored by timestamp."""

    name = "redis"

    def __init__(self, connection: RedisConnection, timeout: float = 2.0) -> None:
        self.connection = connection
        self.timeout = timeout

    async def _run(self, operation: Callable, *args) -> StoreResult:
        try:
            client = self.connection.get()
            if client is None:
                return StoreResult.failure("redis not configured")
            value = await asyncio.wait_for(operation(client, *args), timeout=self.timeout)
        except ValueError as e:
            # from_url rejects an unusable URL
            return StoreResult.failure(f"invalid redis configuration: {e}")
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            await self.connection.reset()
            return StoreResult.failure(f"{type(e).__name__}: {e}")
        return StoreResult.success(value)

    @staticmethod
    async def _record(client, key: str, now_ms: float, window_ms: int, limit: int) -> int:
        script = client.register_script(RECORD_SCRIPT)
        current = await script(
            keys=[key],
            args=[
                f"{now_ms:.3f}",
                window_ms,
                limit,
                f"{now_ms:.3f}:{secrets.token_hex(4)}",
                math.ceil(window_ms / 1000),
            ],
        )
        return int(current)

    @staticmethod
    async def _count(client, key: str, now_ms: float, window_ms: int) -> int:
        pipe = client.pipeline(transaction=True)
        pipe.zremrangebyscore(key, 0, now_ms - window_ms)
        pipe.zcard(key)
        results = await pipe.execute()
        return int(results[1])

    @staticmethod
    async def _oldest(client, key: str, now_ms: float, window_ms: int) -> Optional[float]:
        pipe = client.pipeline(transaction=True)
        pipe.zremrangebyscore(key, 0, now_ms - window_ms)
        pipe.zrange(key, 0, 0, withscores=True)
        results = await pipe.execute()
        entries = results[1]
        if not entries:
            return None
        return float(entries[0][1])

    async def record(
        self, identifier: str, now_ms: float, window_ms: int, limit: int
    ) -> StoreResult[int]:
        return await self._run(self._record, KEY_PREFIX + identifier, now_ms, window_ms, limit)

    async def count(self, identifier: str, now_ms: float, window_ms: int) -> StoreResult[int]:
        return await self._run(self._count, KEY_PREFIX + identifier, now_ms, window_ms)

    async def oldest(
        self, identifier: str, now_ms: float, window_ms: int
    ) -> StoreResult[Optional[float]]:
        return await self._run(self._oldest, KEY_PREFIX + identifier, now_ms, window_ms)

    def sweep(self, now_ms: float, window_ms: int) -> int:
        """No-op for Redis (keys expire through their TTL)."""
        return 0


class FallbackWindowStore:
    """Durable store first, process memory when the durable store fails.

    With ``fail_closed`` the failure is passed through instead, so the limiter
    denies rather than counting in memory.
    """

    name = "fallback"

    def __init__(
        self,
        primary: WindowStore,
        fallback: Optional[MemoryWindowStore] = None,
        fail_closed: bool = False,
    ) -> None:
        self.primary = primary
        self.fallback = fallback or MemoryWindowStore()
        self.fail_closed = fail_closed
        self.degraded = False

    async def _choose(self, result: StoreResult, operation: str, *args) -> StoreResult:
        if result.ok:
            if self.degraded:
                logger.info("Durable rate-limit store recovered; leaving memory fallback")
                self.degraded = False
            return result
        if not self.degraded:
            logger.warning(
                "Durable rate-limit store unavailable (%s); %s",
                result.error,
                "failing closed" if self.fail_closed else "falling back to in-memory limiting",
            )
            self.degraded = True
        if self.fail_closed:
            return result
        return await getattr(self.fallback, operation)(*args)

    async def record(
        self, identifier: str, now_ms: float, window_ms: int, limit: int
    ) -> StoreResult[int]:
        args = (identifier, now_ms, window_ms, limit)
        return await self._choose(await self.primary.record(*args), "record", *args)

    async def count(self, identifier: str, now_ms: float, window_ms: int) -> StoreResult[int]:
        args = (identifier, now_ms, window_ms)
        return await self._choose(await self.primary.count(*args), "count", *args)

    async def oldest(
        self, identifier: str, now_ms: float, window_ms: int
    ) -> StoreResult[Optional[float]]:
        args = (identifier, now_ms, window_ms)
        return await self._choose(await self.primary.oldest(*args), "oldest", *args)

    def sweep(self, now_ms: float, window_ms: int) -> int:
        return self.primary.sweep(now_ms, window_ms) + self.fallback.sweep(now_ms, window_ms)


class RateLimiter:
    """Sliding window rate limiter keyed by an arbitrary caller identifier.

    The limiter performs no normalization: every distinct identifier string,
    including the empty string, is its own bucket.
    """

    def __init__(
        self,
        window_ms: int,
        max_requests: int,
        store: Optional[WindowStore] = None,
        clock: Optional[Callable[[], float]] = None,
        sweep_interval_seconds: float = 300.0,
    ) -> None:
        self.window_ms = window_ms
        self.max_requests = max_requests
        self.store = store or MemoryWindowStore()
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock or _wall_clock_ms
        self._sweeper: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        connection: Optional[RedisConnection] = None,
        window_ms: Optional[int] = None,
        max_requests: Optional[int] = None,
    ) -> "RateLimiter":
        store: WindowStore
        if connection is not None and connection.configured:
            store = FallbackWindowStore(
                RedisWindowStore(connection, timeout=settings.redis_operation_timeout_seconds),
                fail_closed=settings.rate_limit_fail_closed,
            )
        else:
            store = MemoryWindowStore()
        return cls(
            window_ms=window_ms or settings.rate_limit_window_ms,
            max_requests=max_requests or settings.rate_limit_max_requests,
            store=store,
            sweep_interval_seconds=settings.rate_limit_sweep_interval_seconds,
        )

    async def open(self) -> None:
        """Start the periodic sweep of expired in-memory windows."""
        if self._sweeper is None and self.sweep_interval_seconds > 0:
            self._sweeper = asyncio.create_task(self._sweep_periodically())

    async def close(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None

    async def _sweep_periodically(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            evicted = self.sweep()
            if evicted:
                logger.debug("Rate limiter sweep evicted %d idle identifiers", evicted)

    def sweep(self) -> int:
        return self.store.sweep(self._clock(), self.window_ms)

    async def check(self, identifier: str) -> RateLimitDecision:
        """Count this request against ``identifier`` and decide whether it may proceed."""
        now = self._clock()
        result = await self.store.record(identifier, now, self.window_ms, self.max_requests)
        if not result.ok:
            return RateLimitDecision(allowed=False, remaining=0, retry_after_ms=self.window_ms)
        current = result.value or 0
        if current < self.max_requests:
            return RateLimitDecision(
                allowed=True,
                remaining=max(0, self.max_requests - current - 1),
            )
        return RateLimitDecision(
            allowed=False,
            remaining=0,
            retry_after_ms=await self._retry_after(identifier, now),
        )

    async def can_make_request(self, identifier: str) -> bool:
        return (await self.check(identifier)).allowed

    async def remaining_requests(self, identifier: str) -> int:
        result = await self.store.count(identifier, self._clock(), self.window_ms)
        if not result.ok:
            return 0
        return max(0, self.max_requests - (result.value or 0))

    async def time_until_next_request(self, identifier: str) -> int:
        """Milliseconds until the oldest in-window request leaves the window."""
        return await self._retry_after(identifier, self._clock())

    async def _retry_after(self, identifier: str, now: float) -> int:
        result = await self.store.oldest(identifier, now, self.window_ms)
        if not result.ok:
            return self.window_ms
        if result.value is None:
            return 0
        return max(0, math.ceil(result.value + self.window_ms - now))
