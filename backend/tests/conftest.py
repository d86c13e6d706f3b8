"""
Test configuration and shared fixtures for PaperTrade backend tests.
"""

import asyncio
import os
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Tuple

import pytest

# Settings are read from the environment on access; keep tests hermetic.
os.environ.setdefault("LOG_FILE_ENABLED", "false")
os.environ.setdefault("MARKET_SIMULATED_FEED_ENABLED", "false")
os.environ.setdefault("TRADING_EXECUTION_DELAY_MS", "0")
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("SIGNAL_DEDUP_BACKEND", "memory")

from papertrade.core.clock import IST, Clock
from papertrade.core.config import Settings
from papertrade.execution.order_executor import ExecutorConfig, OrderExecutor
from papertrade.services.audit_trail import AuditTrail, MemoryAuditStorage
from papertrade.services.error_handler import ErrorHandler
from papertrade.services.price_cache import PriceCache
from papertrade.services.risk_manager import RiskManager
from papertrade.services.signal_cache import MemorySignalCache
from papertrade.services.strategy_engine import StrategyEngine
from papertrade.stores.base import Account, Instrument, Strategy
from papertrade.stores.memory import MemoryInstrumentStore, MemoryPortfolioStore, MemoryStrategyStore


# Monday, inside the 09:15 - 15:30 session
SESSION_START = datetime(2024, 1, 15, 10, 0, tzinfo=IST)


# =============================================================================
# Clock
# =============================================================================

class ManualClock(Clock):
    """
    Clock that only moves when a test advances it.

    Sleepers wait until advance() carries the clock past their deadline.
    """

    def __init__(self, start: datetime = SESSION_START):
        self._now = start
        self._monotonic = 0.0
        self._waiters: List[Tuple[datetime, asyncio.Future]] = []

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._monotonic

    async def sleep(self, seconds: float) -> None:
        await self.sleep_until(self._now + timedelta(seconds=seconds))

    async def sleep_until(self, deadline: datetime) -> None:
        if deadline <= self._now:
            await asyncio.sleep(0)
            return
        future = asyncio.get_running_loop().create_future()
        self._waiters.append((deadline, future))
        await future

    @property
    def sleepers(self) -> int:
        return sum(1 for _, f in self._waiters if not f.done())

    def advance(self, seconds: float) -> None:
        self._now += timedelta(seconds=seconds)
        self._monotonic += seconds
        waiting = []
        for deadline, future in self._waiters:
            if future.done():
                continue
            if deadline <= self._now:
                future.set_result(None)
            else:
                waiting.append((deadline, future))
        self._waiters = waiting

    def set(self, moment: datetime) -> None:
        """Jump to moment (forward only)."""
        self.advance((moment - self._now).total_seconds())


async def settle(rounds: int = 5) -> None:
    """Let woken tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def clock():
    return ManualClock()


# =============================================================================
# Sample Data Fixtures
# =============================================================================

USER_ID = "user-1"
SECRET = "test-secret"


def make_strategy(**overrides) -> Strategy:
    values = dict(
        id="strat-1",
        user_id=USER_ID,
        name="RSI crossover",
        symbol="RELIANCE",
        webhook_secret=SECRET,
        max_trades_per_day=10,
        max_loss_per_day=Decimal("5000"),
        max_capital_per_trade=Decimal("10000"),
        cooldown_seconds=0,
        capital_allocated=Decimal("100000"),
    )
    values.update(overrides)
    return Strategy(**values)


@pytest.fixture
def sample_strategy():
    return make_strategy()


@pytest.fixture
def sample_instruments():
    return [
        Instrument(symbol="RELIANCE", name="Reliance Industries", reference_price=Decimal("100")),
        Instrument(symbol="TCS", name="Tata Consultancy Services", reference_price=Decimal("3500")),
        Instrument(symbol="DELISTED", name="Inactive Co", reference_price=Decimal("10"), is_active=False),
    ]


@pytest.fixture
def strategy_store(sample_strategy):
    return MemoryStrategyStore([sample_strategy])


@pytest.fixture
def instrument_store(sample_instruments):
    return MemoryInstrumentStore(sample_instruments)


@pytest.fixture
def portfolio_store():
    return MemoryPortfolioStore([Account(user_id=USER_ID, balance=Decimal("100000"))])


# =============================================================================
# Services
# =============================================================================

@pytest.fixture
def price_cache(instrument_store, clock):
    return PriceCache(instrument_store=instrument_store, clock=clock)


@pytest.fixture
def executor(price_cache, portfolio_store, clock):
    """Executor without slippage or latency so amounts are exact."""
    config = ExecutorConfig(slippage_percent=Decimal("0"), execution_delay_ms=0)
    return OrderExecutor(price_cache, portfolio_store, clock=clock, config=config)


@pytest.fixture
def risk_manager(strategy_store, clock):
    return RiskManager(strategy_store=strategy_store, clock=clock)


@pytest.fixture
def audit_storage():
    return MemoryAuditStorage()


@pytest.fixture
def audit_trail(audit_storage, clock):
    return AuditTrail(storage=audit_storage, clock=clock)


@pytest.fixture
def signal_cache(clock):
    return MemorySignalCache(ttl_seconds=60, clock=clock)


@pytest.fixture
def error_handler(clock):
    return ErrorHandler(clock=clock)


@pytest.fixture
def engine(
    strategy_store,
    instrument_store,
    price_cache,
    risk_manager,
    executor,
    audit_trail,
    signal_cache,
    error_handler,
    clock,
):
    return StrategyEngine(
        strategy_store=strategy_store,
        instrument_store=instrument_store,
        price_cache=price_cache,
        risk_manager=risk_manager,
        order_executor=executor,
        audit_trail=audit_trail,
        signal_cache=signal_cache,
        error_handler=error_handler,
        clock=clock,
    )


@pytest.fixture
def settings():
    return Settings()


def signal(**overrides) -> dict:
    payload = {
        "symbol": "NSE:RELIANCE",
        "action": "BUY",
        "quantity": 10,
        "secret": SECRET,
        "timestamp": "2024-01-15T10:00:00Z",
    }
    payload.update(overrides)
    return payload
