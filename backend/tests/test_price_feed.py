"""
Tests for tick ingestion and the simulated price feed.
"""

import asyncio
import pytest
from decimal import Decimal

from conftest import settle
from papertrade.services.price_feed import PriceFeed, PriceGenerator, SimulatedPriceFeed


class TestPriceFeed:
    """Tests for external tick ingestion."""

    def test_ingest_updates_cache(self, price_cache):
        feed = PriceFeed(price_cache)
        snapshot = feed.ingest({"symbol": "RELIANCE", "ltp": 2501})

        assert snapshot.ltp == Decimal("2501")
        assert feed.get_status()["ticks_received"] == 1

    def test_tick_without_symbol_dropped(self, price_cache):
        feed = PriceFeed(price_cache)
        assert feed.ingest({"ltp": 10}) is None
        assert feed.get_status()["ticks_received"] == 0


class TestPriceGenerator:
    """Tests for the mean-reverting random walk."""

    def test_unknown_symbol(self):
        assert PriceGenerator(seed=1).next_price("X") is None

    def test_seeded_walk_is_reproducible(self, clock):
        a = PriceGenerator(seed=42, clock=clock)
        b = PriceGenerator(seed=42, clock=clock)
        a.initialize("X", 100.0)
        b.initialize("X", 100.0)

        assert [a.next_price("X") for _ in range(5)] == [b.next_price("X") for _ in range(5)]

    def test_tick_fields(self, clock):
        generator = PriceGenerator(seed=7, clock=clock)
        generator.initialize("X", 100.0)
        tick = generator.next_price("X")

        assert set(tick) == {"symbol", "price", "change", "change_percent", "timestamp"}
        assert tick["timestamp"] == clock.now().isoformat()

    def test_prices_stay_within_bounds(self):
        generator = PriceGenerator(volatility=0.5, mean_reversion=0.0, seed=3)
        generator.initialize("X", 100.0)
        for _ in range(500):
            price = generator.next_price("X")["price"]
            assert 10.0 <= price <= 200.0

    def test_reset_returns_to_base(self):
        generator = PriceGenerator(seed=5)
        generator.initialize("X", 100.0)
        for _ in range(10):
            generator.next_price("X")
        generator.reset("X")
        assert generator.current("X") == 100.0

    def test_initialize_keeps_existing_walk(self):
        generator = PriceGenerator(seed=5)
        generator.initialize("X", 100.0)
        generator.next_price("X")
        moved = generator.current("X")
        generator.initialize("X", 500.0)
        assert generator.current("X") == moved


class TestSimulatedPriceFeed:
    """Tests for the periodic synthetic feed."""

    @pytest.mark.asyncio
    async def test_tick_once_covers_active_instruments(self, price_cache, instrument_store, clock):
        feed = SimulatedPriceFeed(price_cache, instrument_store, PriceGenerator(seed=1, clock=clock), clock=clock)

        assert await feed.tick_once() == 2
        assert set(price_cache.symbols()) == {"RELIANCE", "TCS"}

        snapshot = price_cache.get("TCS")
        assert snapshot.close == Decimal("3500.0")
        assert snapshot.low <= snapshot.ltp <= snapshot.high
        assert snapshot.volume > 0

    @pytest.mark.asyncio
    async def test_session_high_low_and_volume_accumulate(self, price_cache, instrument_store, clock):
        feed = SimulatedPriceFeed(price_cache, instrument_store, PriceGenerator(seed=2, clock=clock), clock=clock)

        prices = []
        for _ in range(20):
            await feed.tick_once()
            prices.append(price_cache.get_ltp("RELIANCE"))

        snapshot = price_cache.get("RELIANCE")
        assert snapshot.open == prices[0]
        assert snapshot.high == max(prices)
        assert snapshot.low == min(prices)
        assert snapshot.volume >= 20 * 100

    @pytest.mark.asyncio
    async def test_runs_on_clock_interval(self, price_cache, instrument_store, clock):
        feed = SimulatedPriceFeed(
            price_cache, instrument_store, PriceGenerator(seed=3, clock=clock), interval=2.0, clock=clock,
        )
        await feed.start()
        await settle()
        assert feed.get_status()["ticks_received"] == 2

        clock.advance(2.0)
        await settle()
        assert feed.get_status()["ticks_received"] == 4

        await feed.stop()
        clock.advance(10.0)
        await asyncio.sleep(0)
        assert feed.get_status()["ticks_received"] == 4


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
