"""
Tests for the signal deduplication cache.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from papertrade.services.signal_cache import MemorySignalCache, RedisSignalCache


async def _keys(*keys):
    for key in keys:
        yield key


class TestMemorySignalCache:
    """Tests for the process-local cache."""

    @pytest.mark.asyncio
    async def test_add_then_seen(self, signal_cache):
        assert not await signal_cache.seen("1_2024")
        assert await signal_cache.add("1_2024")
        assert await signal_cache.seen("1_2024")

    @pytest.mark.asyncio
    async def test_add_twice_returns_false(self, signal_cache):
        await signal_cache.add("k")
        assert not await signal_cache.add("k")
        assert await signal_cache.size() == 1

    @pytest.mark.asyncio
    async def test_expires_after_ttl(self, signal_cache, clock):
        await signal_cache.add("k")

        clock.advance(59.9)
        assert await signal_cache.seen("k")

        clock.advance(0.1)
        assert not await signal_cache.seen("k")
        assert await signal_cache.size() == 0

    @pytest.mark.asyncio
    async def test_expired_key_can_be_added_again(self, signal_cache, clock):
        await signal_cache.add("k")
        clock.advance(61)
        assert await signal_cache.add("k")

    @pytest.mark.asyncio
    async def test_clear(self, signal_cache):
        await signal_cache.add("a")
        await signal_cache.add("b")

        assert await signal_cache.clear() == 2
        assert not await signal_cache.seen("a")

    @pytest.mark.asyncio
    async def test_custom_ttl(self, clock):
        cache = MemorySignalCache(ttl_seconds=5, clock=clock)
        await cache.add("k")
        clock.advance(5)
        assert not await cache.seen("k")


class TestRedisSignalCache:
    """Tests for the shared Redis cache against a mocked client."""

    @pytest.fixture
    def client(self):
        client = AsyncMock()
        client.set.return_value = True
        client.exists.return_value = 0
        client.delete.return_value = 1
        return client

    @pytest.mark.asyncio
    async def test_add_uses_set_nx_with_ttl(self, client):
        cache = RedisSignalCache(client, ttl_seconds=60)

        assert await cache.add("strat-1_2024")
        client.set.assert_awaited_once_with("papertrade:signal:strat-1_2024", "1", nx=True, ex=60)

    @pytest.mark.asyncio
    async def test_add_existing_key(self, client):
        client.set.return_value = None
        cache = RedisSignalCache(client)
        assert not await cache.add("k")

    @pytest.mark.asyncio
    async def test_seen(self, client):
        cache = RedisSignalCache(client, prefix="test:")
        client.exists.return_value = 1

        assert await cache.seen("k")
        client.exists.assert_awaited_once_with("test:signal:k")

    @pytest.mark.asyncio
    async def test_clear_scans_prefix(self, client):
        client.scan_iter = MagicMock(return_value=_keys("papertrade:signal:a", "papertrade:signal:b"))
        cache = RedisSignalCache(client)

        assert await cache.clear() == 2
        client.scan_iter.assert_called_once_with(match="papertrade:signal:*")
        assert client.delete.await_count == 2

    @pytest.mark.asyncio
    async def test_size(self, client):
        client.scan_iter = MagicMock(return_value=_keys("x", "y", "z"))
        assert await RedisSignalCache(client).size() == 3

    @pytest.mark.asyncio
    async def test_close(self, client):
        await RedisSignalCache(client).close()
        client.aclose.assert_awaited_once()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
