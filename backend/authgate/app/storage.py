"""Cache backends for process-local or shared throttling state."""
from __future__ import annotations

import asyncio
import math
from typing import Callable, Optional

import redis.asyncio as redis

from .logging import get_logger


logger = get_logger("authgate.storage")

Clock = Callable[[], float]


class CacheBackend:
    """Minimal cache interface used by the rate limiter and blocklist."""

    async def get(self, key: str) -> Optional[bytes]:  # pragma: no cover - interface
        raise NotImplementedError

    async def set(self, key: str, value: bytes, ttl: Optional[int] = None) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def delete(self, key: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def incr(self, key: str, ttl: int) -> tuple[int, int]:  # pragma: no cover - interface
        """Atomically increment ``key`` and return ``(count, seconds_until_reset)``.

        The expiry is set only when the key is created, so a window never
        slides forward on later increments.
        """

        raise NotImplementedError

    async def ttl(self, key: str) -> Optional[int]:  # pragma: no cover - interface
        raise NotImplementedError

    async def keys(self, prefix: str) -> list[str]:  # pragma: no cover - interface
        raise NotImplementedError

    async def purge_expired(self) -> int:
        return 0

    async def close(self) -> None:
        return None


class MemoryCache(CacheBackend):
    """In-memory cache used when Redis isn't configured."""

    def __init__(self, *, clock: Clock | None = None) -> None:
        self._store: dict[str, tuple[bytes, Optional[float]]] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    def _now(self) -> float:
        if self._clock is not None:
            return self._clock()
        return asyncio.get_running_loop().time()

    def _live_entry(self, key: str, now: float) -> tuple[bytes, Optional[float]] | None:
        entry = self._store.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= now:
            self._store.pop(key, None)
            return None
        return entry

    async def get(self, key: str) -> Optional[bytes]:
        async with self._lock:
            entry = self._live_entry(key, self._now())
            return entry[0] if entry else None

    async def set(self, key: str, value: bytes, ttl: Optional[int] = None) -> None:
        async with self._lock:
            expires_at = None
            if ttl:
                expires_at = self._now() + ttl
            self._store[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._store.pop(key, None)

    async def incr(self, key: str, ttl: int) -> tuple[int, int]:
        async with self._lock:
            now = self._now()
            entry = self._live_entry(key, now)
            if entry is None:
                count, expires_at = 1, now + ttl
            else:
                raw, expires_at = entry
                count = int(raw.decode("utf-8")) + 1
                if expires_at is None:
                    expires_at = now + ttl
            self._store[key] = (str(count).encode("utf-8"), expires_at)
            return count, max(0, math.ceil(expires_at - now))

    async def ttl(self, key: str) -> Optional[int]:
        async with self._lock:
            now = self._now()
            entry = self._live_entry(key, now)
            if entry is None or entry[1] is None:
                return None
            return max(0, math.ceil(entry[1] - now))

    async def keys(self, prefix: str) -> list[str]:
        async with self._lock:
            now = self._now()
            return [key for key in list(self._store) if key.startswith(prefix) and self._live_entry(key, now)]

    async def purge_expired(self) -> int:
        async with self._lock:
            now = self._now()
            expired = [
                key
                for key, (_, expires_at) in self._store.items()
                if expires_at is not None and expires_at <= now
            ]
            for key in expired:
                del self._store[key]
            return len(expired)


class RedisCache(CacheBackend):
    """Redis backed cache using ``redis.asyncio``."""

    def __init__(self, url: str) -> None:
        self._client = redis.from_url(url)

    async def get(self, key: str) -> Optional[bytes]:
        return await self._client.get(key)

    async def set(self, key: str, value: bytes, ttl: Optional[int] = None) -> None:
        await self._client.set(name=key, value=value, ex=ttl)

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def incr(self, key: str, ttl: int) -> tuple[int, int]:
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.expire(key, ttl, nx=True)
            pipe.ttl(key)
            count, _, remaining = await pipe.execute()
        if remaining is None or remaining < 0:
            remaining = ttl
        return int(count), int(remaining)

    async def ttl(self, key: str) -> Optional[int]:
        remaining = await self._client.ttl(key)
        if remaining is None or remaining < 0:
            return None
        return int(remaining)

    async def keys(self, prefix: str) -> list[str]:
        found: list[str] = []
        async for key in self._client.scan_iter(match=f"{prefix}*"):
            found.append(key.decode("utf-8") if isinstance(key, bytes) else str(key))
        return found

    async def close(self) -> None:
        await self._client.aclose()


def build_cache(redis_url: str | None, *, clock: Clock | None = None) -> CacheBackend:
    if redis_url:
        try:
            return RedisCache(redis_url)
        except (ValueError, redis.RedisError):
            logger.warning("redis_cache_initialisation_failed", exc_info=True)
    return MemoryCache(clock=clock)


__all__ = [
    "CacheBackend",
    "Clock",
    "MemoryCache",
    "RedisCache",
    "build_cache",
]
