"""
Price Feed
PaperTrade Platform

Streaming ingestion into the PriceCache.

- PriceFeed: entry point for any external tick source
- PriceGenerator: mean-reverting random walk per symbol
- SimulatedPriceFeed: periodic synthetic ticks for every active instrument
"""

import asyncio
import random
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from loguru import logger

from papertrade.core.clock import Clock, SystemClock
from papertrade.services.price_cache import PriceCache, PriceSnapshot
from papertrade.stores.base import InstrumentStore


class PriceFeed:
    """Pushes ticks from an upstream source into the cache."""

    def __init__(self, price_cache: PriceCache):
        self.price_cache = price_cache
        self._ticks_received = 0

    def ingest(self, tick: Mapping[str, Any]) -> Optional[PriceSnapshot]:
        symbol = tick.get("symbol")
        if not symbol:
            logger.warning(f"Dropping tick without symbol: {dict(tick)}")
            return None
        self._ticks_received += 1
        return self.price_cache.update(str(symbol), tick)

    def get_status(self) -> Dict[str, Any]:
        return {"ticks_received": self._ticks_received}


@dataclass
class _WalkState:
    base_price: float
    current_price: float
    previous_price: float
    change: float = 0.0
    change_percent: float = 0.0


class PriceGenerator:
    """
    Random walk with mean reversion towards the base price.

    Prices stay within [0.1 x base, 2 x base].
    """

    def __init__(
        self,
        volatility: float = 0.002,
        mean_reversion: float = 0.05,
        seed: Optional[int] = None,
        clock: Optional[Clock] = None,
    ):
        self.volatility = volatility
        self.mean_reversion = mean_reversion
        self.clock = clock or SystemClock()
        self._random = random.Random(seed)
        self._stocks: Dict[str, _WalkState] = {}

    def initialize(self, symbol: str, base_price: float) -> None:
        if symbol not in self._stocks:
            self._stocks[symbol] = _WalkState(
                base_price=base_price,
                current_price=base_price,
                previous_price=base_price,
            )

    def next_price(self, symbol: str) -> Optional[Dict[str, Any]]:
        stock = self._stocks.get(symbol)
        if stock is None:
            return None

        random_change = (self._random.random() - 0.5) * 2 * self.volatility
        reversion = 0.0
        if stock.base_price > 0:
            deviation = (stock.current_price - stock.base_price) / stock.base_price
            reversion = -deviation * self.mean_reversion

        new_price = stock.current_price * (1 + random_change + reversion)
        bounded = max(stock.base_price * 0.1, min(stock.base_price * 2.0, new_price))

        change = bounded - stock.current_price
        change_percent = change / stock.current_price * 100 if stock.current_price else 0.0

        stock.previous_price = stock.current_price
        stock.current_price = bounded
        stock.change = change
        stock.change_percent = change_percent

        return {
            "symbol": symbol,
            "price": round(bounded, 2),
            "change": round(change, 2),
            "change_percent": round(change_percent, 2),
            "timestamp": self.clock.now().isoformat(),
        }

    def next_volume(self, low: int = 100, high: int = 1000) -> int:
        return self._random.randint(low, high)

    def current(self, symbol: str) -> Optional[float]:
        stock = self._stocks.get(symbol)
        return round(stock.current_price, 2) if stock else None

    def reset(self, symbol: str) -> None:
        stock = self._stocks.get(symbol)
        if stock:
            self._stocks[symbol] = _WalkState(
                base_price=stock.base_price,
                current_price=stock.base_price,
                previous_price=stock.base_price,
            )


class SimulatedPriceFeed(PriceFeed):
    """
    Periodically generates a tick for every active instrument.

    Usage:
        feed = SimulatedPriceFeed(cache, instruments, interval=2.0)
        await feed.start()
        ...
        await feed.stop()
    """

    def __init__(
        self,
        price_cache: PriceCache,
        instrument_store: InstrumentStore,
        generator: Optional[PriceGenerator] = None,
        interval: float = 2.0,
        clock: Optional[Clock] = None,
        default_reference_price: Decimal = Decimal("100"),
    ):
        super().__init__(price_cache)
        self.instrument_store = instrument_store
        self.generator = generator or PriceGenerator()
        self.interval = interval
        self.clock = clock or SystemClock()
        self.default_reference_price = default_reference_price

        self._session: Dict[str, Dict[str, float]] = {}
        self._task: Optional[asyncio.Task] = None
        self._running = False

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info(f"Simulated price feed started (interval {self.interval}s)")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Simulated price feed stopped")

    async def _run(self) -> None:
        while self._running:
            try:
                await self.tick_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Simulated feed cycle failed: {e}")
            await self.clock.sleep(self.interval)

    async def tick_once(self) -> int:
        """Generate one tick per active instrument. Returns the tick count."""
        instruments = await self.instrument_store.list_active()
        count = 0
        for instrument in instruments:
            base = instrument.reference_price or self.default_reference_price
            self.generator.initialize(instrument.symbol, float(base))
            generated = self.generator.next_price(instrument.symbol)
            if generated is None:
                continue

            price = generated["price"]
            session = self._session.setdefault(
                instrument.symbol,
                {"open": price, "high": price, "low": price, "volume": 0},
            )
            session["high"] = max(session["high"], price)
            session["low"] = min(session["low"], price)
            session["volume"] += self.generator.next_volume()

            self.ingest({
                "symbol": instrument.symbol,
                "ltp": price,
                "open": session["open"],
                "high": session["high"],
                "low": session["low"],
                "close": float(base),
                "volume": session["volume"],
            })
            count += 1
        return count
