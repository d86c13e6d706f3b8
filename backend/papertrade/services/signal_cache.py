"""
Signal Deduplication Cache
PaperTrade Platform

Remembers processed signal keys for a fixed window so repeated webhook
deliveries execute at most once.

Backends:
- MemorySignalCache: process-local dict of key -> expiry
- RedisSignalCache: SET NX EX, shared across workers
"""

from abc import ABC, abstractmethod
from typing import Dict, Optional

from loguru import logger
from redis.asyncio import Redis

from papertrade.core.clock import Clock, SystemClock


class SignalCache(ABC):
    """Set of recently processed signal keys with a time-to-live."""

    def __init__(self, ttl_seconds: int = 60):
        self.ttl_seconds = ttl_seconds

    @abstractmethod
    async def seen(self, key: str) -> bool:
        """True if key was added less than ttl_seconds ago."""

    @abstractmethod
    async def add(self, key: str) -> bool:
        """Record key. Returns False if it was already live."""

    @abstractmethod
    async def clear(self) -> int:
        """Drop every key. Returns the number removed."""

    @abstractmethod
    async def size(self) -> int:
        ...

    async def close(self) -> None:
        return None


class MemorySignalCache(SignalCache):
    """
    Dict of key -> expiry (monotonic seconds).

    Expired keys are treated as absent on read and swept on insert.
    """

    def __init__(self, ttl_seconds: int = 60, clock: Optional[Clock] = None):
        super().__init__(ttl_seconds)
        self.clock = clock or SystemClock()
        self._expiry: Dict[str, float] = {}

    def _live(self, key: str, now: float) -> bool:
        expires = self._expiry.get(key)
        return expires is not None and expires > now

    def _sweep(self, now: float) -> None:
        expired = [k for k, expires in self._expiry.items() if expires <= now]
        for key in expired:
            del self._expiry[key]

    async def seen(self, key: str) -> bool:
        return self._live(key, self.clock.monotonic())

    async def add(self, key: str) -> bool:
        now = self.clock.monotonic()
        self._sweep(now)
        if key in self._expiry:
            return False
        self._expiry[key] = now + self.ttl_seconds
        return True

    async def clear(self) -> int:
        count = len(self._expiry)
        self._expiry.clear()
        return count

    async def size(self) -> int:
        now = self.clock.monotonic()
        return sum(1 for expires in self._expiry.values() if expires > now)


class RedisSignalCache(SignalCache):
    """Keys stored as prefix + "signal:" + key with a server-side TTL."""

    def __init__(self, client: Redis, ttl_seconds: int = 60, prefix: str = "papertrade:"):
        super().__init__(ttl_seconds)
        self._client = client
        self.prefix = f"{prefix}signal:"

    @classmethod
    def from_url(
        cls,
        url: str,
        ttl_seconds: int = 60,
        prefix: str = "papertrade:",
        socket_timeout: Optional[float] = None,
    ) -> "RedisSignalCache":
        client = Redis.from_url(url, decode_responses=True, socket_timeout=socket_timeout)
        return cls(client, ttl_seconds=ttl_seconds, prefix=prefix)

    def _key(self, key: str) -> str:
        """Get prefixed key."""
        return f"{self.prefix}{key}"

    async def seen(self, key: str) -> bool:
        return await self._client.exists(self._key(key)) > 0

    async def add(self, key: str) -> bool:
        created = await self._client.set(self._key(key), "1", nx=True, ex=self.ttl_seconds)
        return bool(created)

    async def clear(self) -> int:
        count = 0
        async for full_key in self._client.scan_iter(match=f"{self.prefix}*"):
            count += await self._client.delete(full_key)
        logger.info(f"Cleared {count} signal keys from Redis")
        return count

    async def size(self) -> int:
        count = 0
        async for _ in self._client.scan_iter(match=f"{self.prefix}*"):
            count += 1
        return count

    async def close(self) -> None:
        await self._client.aclose()
        logger.info("Disconnected from Redis")
