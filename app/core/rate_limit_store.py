"""
Rate Limit Storage for LookEscolar.

Keyed counter entries with per-key windows and block timers.
In-memory backend for single-process deployments and tests, Redis backend
when counters must be shared across worker processes.

Usage:
    from app.core.rate_limit_store import InMemoryRateLimitStore

    store = InMemoryRateLimitStore()
    entry = await store.get("token_val:1.2.3.4:ab12:/api/public/share/x")
    await store.set(key, entry)
    removed = await store.sweep(now=time.time())

The limiter does read-compute-write on entries; neither backend makes that
pair atomic.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_IDLE_TTL_SECONDS = 60 * 60


@dataclass(frozen=True)
class RateLimitEntry:
    """Counter state for one rate-limit key. Timestamps are epoch seconds."""

    count: int
    window_start: float
    last_attempt: float
    blocked_until: float | None = None

    def is_blocked(self, now: float) -> bool:
        return self.blocked_until is not None and now < self.blocked_until

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str | bytes) -> "RateLimitEntry":
        data = json.loads(raw)
        return cls(
            count=int(data["count"]),
            window_start=float(data["window_start"]),
            last_attempt=float(data["last_attempt"]),
            blocked_until=data.get("blocked_until"),
        )


class RateLimitStore(ABC):
    """
    Storage contract for rate-limit entries.

    A networked implementation must:
    - return None for unknown keys
    - persist the whole entry on set (last write wins)
    - expire entries on its own or through sweep()
    """

    @abstractmethod
    async def get(self, key: str) -> RateLimitEntry | None:
        ...

    @abstractmethod
    async def set(self, key: str, entry: RateLimitEntry, ttl_seconds: float | None = None) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    async def sweep(self, now: float) -> int:
        """Remove stale entries. Returns the number removed."""

    @abstractmethod
    async def stats(self, now: float) -> dict[str, Any]:
        ...

    @abstractmethod
    async def clear(self) -> None:
        ...

    async def close(self) -> None:
        return None


class InMemoryRateLimitStore(RateLimitStore):
    """Process-local store. Resets on restart."""

    def __init__(self, idle_ttl_seconds: float = DEFAULT_IDLE_TTL_SECONDS):
        self._entries: dict[str, RateLimitEntry] = {}
        self._idle_ttl = idle_ttl_seconds
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> RateLimitEntry | None:
        return self._entries.get(key)

    async def set(self, key: str, entry: RateLimitEntry, ttl_seconds: float | None = None) -> None:
        self._entries[key] = entry

    async def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    async def sweep(self, now: float) -> int:
        """Drop entries idle for longer than the TTL that are not blocked."""
        async with self._lock:
            expired = [
                key
                for key, entry in self._entries.items()
                if now - entry.last_attempt > self._idle_ttl and not entry.is_blocked(now)
            ]
            for key in expired:
                del self._entries[key]

        if expired:
            logger.info("Rate limit sweep removed %d idle entries", len(expired))
        return len(expired)

    async def stats(self, now: float) -> dict[str, Any]:
        blocked = sum(1 for entry in self._entries.values() if entry.is_blocked(now))
        return {
            "backend": "memory",
            "total_entries": len(self._entries),
            "blocked_entries": blocked,
        }

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()
        logger.info("Rate limit store cleared")

    def __len__(self) -> int:
        return len(self._entries)


class RedisRateLimitStore(RateLimitStore):
    """Redis-backed store shared by every worker process."""

    def __init__(
        self,
        redis_url: str | None = None,
        client: Any = None,
        key_prefix: str = "ratelimit:",
        idle_ttl_seconds: float = DEFAULT_IDLE_TTL_SECONDS,
    ):
        self._redis_url = redis_url
        self._redis = client
        self._prefix = key_prefix
        self._idle_ttl = idle_ttl_seconds

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def connect(self) -> bool:
        """Open the connection and ping. Returns False when Redis is unreachable."""
        if self._redis is None:
            import redis.asyncio as redis

            self._redis = redis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        try:
            await self._redis.ping()
        except Exception as e:
            logger.warning("Redis rate limit store unavailable: %s", e)
            return False
        logger.info("Redis rate limit store connected: %s", (self._redis_url or "client").split("@")[-1])
        return True

    async def get(self, key: str) -> RateLimitEntry | None:
        raw = await self._redis.get(self._key(key))
        if not raw:
            return None
        return RateLimitEntry.from_json(raw)

    async def set(self, key: str, entry: RateLimitEntry, ttl_seconds: float | None = None) -> None:
        ttl = max(int(ttl_seconds or 0), int(self._idle_ttl), 1)
        await self._redis.set(self._key(key), entry.to_json(), ex=ttl)

    async def delete(self, key: str) -> bool:
        return await self._redis.delete(self._key(key)) > 0

    async def sweep(self, now: float) -> int:
        # Keys carry their own TTL
        return 0

    async def stats(self, now: float) -> dict[str, Any]:
        total = 0
        blocked = 0
        async for redis_key in self._redis.scan_iter(match=f"{self._prefix}*", count=100):
            total += 1
            raw = await self._redis.get(redis_key)
            if raw and RateLimitEntry.from_json(raw).is_blocked(now):
                blocked += 1
        return {"backend": "redis", "total_entries": total, "blocked_entries": blocked}

    async def clear(self) -> None:
        keys = [k async for k in self._redis.scan_iter(match=f"{self._prefix}*", count=100)]
        if keys:
            await self._redis.delete(*keys)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()


async def create_rate_limit_store(
    redis_url: str | None,
    idle_ttl_seconds: float = DEFAULT_IDLE_TTL_SECONDS,
) -> RateLimitStore:
    """Use Redis when configured and reachable, in-memory otherwise."""
    if redis_url:
        store = RedisRateLimitStore(redis_url, idle_ttl_seconds=idle_ttl_seconds)
        if await store.connect():
            logger.info("Rate limiting initialized with Redis backend")
            return store
        logger.info("Rate limiting initialized with in-memory backend (Redis unavailable)")
    else:
        logger.info("Rate limiting initialized with in-memory backend")
    return InMemoryRateLimitStore(idle_ttl_seconds=idle_ttl_seconds)
