"""
Market Data Cache
PaperTrade Platform

Latest price snapshot per instrument, fed by a streaming source and read
by the order executor and the broadcast loop.

Features:
- Partial tick merge (omitted fields carry over)
- LTP never regresses to zero on an empty trade print
- Lazy seeding of untracked instruments from a reference price
- Per-symbol subscriptions over bounded queues
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional

from loguru import logger

from papertrade.core.channel import Channel, Subscription
from papertrade.core.clock import Clock, SystemClock
from papertrade.stores.base import InstrumentStore


PRICE_FIELDS = ("open", "high", "low", "close")


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def _positive(value: Optional[Decimal]) -> Optional[Decimal]:
    return value if value is not None and value > 0 else None


@dataclass(frozen=True)
class PriceSnapshot:
    """Immutable price entry for one symbol."""
    symbol: str
    ltp: Decimal
    timestamp: datetime
    open: Optional[Decimal] = None
    high: Optional[Decimal] = None
    low: Optional[Decimal] = None
    close: Optional[Decimal] = None
    volume: int = 0
    change: Decimal = Decimal("0")
    change_percent: Decimal = Decimal("0")

    def age(self, now: datetime) -> timedelta:
        return now - self.timestamp

    def is_stale(self, now: datetime, max_age: timedelta) -> bool:
        return self.age(now) > max_age

    def to_dict(self) -> Dict[str, Any]:
        def num(value: Optional[Decimal]) -> Optional[float]:
            return float(value) if value is not None else None

        return {
            "symbol": self.symbol,
            "ltp": float(self.ltp),
            "open": num(self.open),
            "high": num(self.high),
            "low": num(self.low),
            "close": num(self.close),
            "volume": self.volume,
            "change": float(self.change),
            "change_percent": float(self.change_percent),
            "timestamp": self.timestamp.isoformat(),
        }


class PriceCache:
    """
    Latest known price per symbol.

    Every write builds a new frozen PriceSnapshot and swaps it in with a
    single assignment, so readers see either the old or the new entry.

    Usage:
        cache = PriceCache(instrument_store=instruments)
        cache.update("RELIANCE", {"ltp": 2500.5, "volume": 1200})
        snapshot = cache.get("RELIANCE")

        sub = cache.subscribe("RELIANCE")
        update = await sub.get()
    """

    def __init__(
        self,
        instrument_store: Optional[InstrumentStore] = None,
        clock: Optional[Clock] = None,
        default_reference_price: Decimal = Decimal("100"),
        subscriber_queue_size: int = 100,
    ):
        self.instrument_store = instrument_store
        self.clock = clock or SystemClock()
        self.default_reference_price = default_reference_price

        self._entries: Dict[str, PriceSnapshot] = {}
        self._channel = Channel(maxsize=subscriber_queue_size)

        self._stats = {
            "updates": 0,
            "ignored_ticks": 0,
            "seeded": 0,
        }

    # =========================================================================
    # Writes
    # =========================================================================

    def update(self, symbol: str, tick: Mapping[str, Any]) -> Optional[PriceSnapshot]:
        """
        Merge a partial tick into the current entry.

        Args:
            symbol: Instrument symbol
            tick: Any of ltp/price, open, high, low, close, volume, timestamp

        Returns:
            The new snapshot, or None if a first tick carried no usable price.
        """
        symbol = symbol.upper()
        previous = self._entries.get(symbol)

        merged: Dict[str, Optional[Decimal]] = {}
        for name in PRICE_FIELDS:
            incoming = _positive(_to_decimal(tick.get(name)))
            carried = getattr(previous, name) if previous else None
            merged[name] = incoming if incoming is not None else carried

        ltp = (
            _positive(_to_decimal(tick.get("ltp")))
            or _positive(_to_decimal(tick.get("price")))
            or (previous.ltp if previous else None)
            or merged["close"]
        )
        if ltp is None:
            self._stats["ignored_ticks"] += 1
            logger.debug(f"Ignoring tick for {symbol}: no usable price")
            return None

        volume = tick.get("volume")
        if volume is None:
            volume = previous.volume if previous else 0

        timestamp = tick.get("timestamp")
        if not isinstance(timestamp, datetime):
            timestamp = self.clock.now()

        close = merged["close"]
        change = ltp - close if close else Decimal("0")
        change_percent = (change / close * 100).quantize(Decimal("0.01")) if close else Decimal("0")

        snapshot = PriceSnapshot(
            symbol=symbol,
            ltp=ltp,
            timestamp=timestamp,
            open=merged["open"],
            high=merged["high"],
            low=merged["low"],
            close=close,
            volume=int(volume),
            change=change,
            change_percent=change_percent,
        )
        self._entries[symbol] = snapshot
        self._stats["updates"] += 1

        self._channel.publish(symbol, snapshot)
        return snapshot

    def seed(self, symbol: str, reference_price: Decimal) -> PriceSnapshot:
        """Create an entry from a reference price unless one exists."""
        symbol = symbol.upper()
        existing = self._entries.get(symbol)
        if existing is not None:
            return existing

        snapshot = PriceSnapshot(
            symbol=symbol,
            ltp=reference_price,
            timestamp=self.clock.now(),
            open=reference_price,
            high=reference_price * Decimal("1.02"),
            low=reference_price * Decimal("0.98"),
            close=reference_price,
            volume=0,
        )
        self._entries[symbol] = snapshot
        self._stats["seeded"] += 1
        logger.info(f"Seeded price for {symbol} at {reference_price}")
        return snapshot

    async def ensure_tracked(self, symbol: str) -> bool:
        """
        Make sure symbol resolves to a price.

        Returns False if the symbol is neither cached nor a known instrument.
        """
        symbol = symbol.upper()
        if symbol in self._entries:
            return True
        if self.instrument_store is None:
            return False

        instrument = await self.instrument_store.get(symbol)
        if instrument is None:
            return False

        reference = _positive(instrument.reference_price) or self.default_reference_price
        self.seed(symbol, reference)
        return True

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, symbol: str) -> Optional[PriceSnapshot]:
        return self._entries.get(symbol.upper())

    def get_ltp(self, symbol: str) -> Optional[Decimal]:
        snapshot = self.get(symbol)
        return snapshot.ltp if snapshot else None

    def get_ohlc(self, symbol: str) -> Optional[Dict[str, Any]]:
        snapshot = self.get(symbol)
        if snapshot is None:
            return None
        data = snapshot.to_dict()
        return {key: data[key] for key in ("open", "high", "low", "close", "volume")}

    def get_many(self, symbols: Iterable[str]) -> Dict[str, PriceSnapshot]:
        result = {}
        for symbol in symbols:
            snapshot = self.get(symbol)
            if snapshot is not None:
                result[snapshot.symbol] = snapshot
        return result

    def all(self) -> List[PriceSnapshot]:
        return list(self._entries.values())

    def symbols(self) -> List[str]:
        return sorted(self._entries)

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def subscribe(self, symbol: str, maxsize: Optional[int] = None) -> Subscription:
        return self._channel.subscribe(symbol.upper(), maxsize=maxsize)

    def unsubscribe(self, subscription: Subscription) -> None:
        self._channel.unsubscribe(subscription)

    def get_status(self) -> Dict[str, Any]:
        return {
            "tracked_symbols": len(self._entries),
            "subscribers": self._channel.subscriber_count(),
            "dropped_messages": self._channel.dropped_total(),
            **self._stats,
        }
