"""
Service Container
PaperTrade Platform

Wires the pipeline together. Every service receives its collaborators
explicitly; the container is the only place that knows the whole graph.

Service Architecture:
    PriceFeed (simulated or external ticks)
        ↓
    PriceCache  →  PriceBroadcaster  →  RealTimeHub (WebSocket clients)
        ↓
    StrategyEngine (webhook signals)
        ↓
    RiskManager (admission)
        ↓
    OrderExecutor (virtual ledger)
        ↓
    AuditTrail
"""

from decimal import Decimal
from typing import Any, Dict, Iterable, Optional
from zoneinfo import ZoneInfo

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from papertrade.core.clock import Clock, SystemClock
from papertrade.core.config import Settings, get_settings
from papertrade.db.session import close_db, create_engine_from_settings, create_session_factory, init_db
from papertrade.db.stores import SqlAuditStorage, SqlInstrumentStore, SqlPortfolioStore, SqlStrategyStore
from papertrade.execution.order_executor import create_order_executor
from papertrade.services.audit_trail import AuditStorage, AuditTrail, FileAuditStorage, MemoryAuditStorage
from papertrade.services.broadcaster import PriceBroadcaster
from papertrade.services.error_handler import ErrorHandler
from papertrade.services.price_cache import PriceCache
from papertrade.services.price_feed import PriceFeed, PriceGenerator, SimulatedPriceFeed
from papertrade.services.realtime_hub import RealTimeHub
from papertrade.services.risk_manager import create_risk_manager
from papertrade.services.signal_cache import MemorySignalCache, RedisSignalCache, SignalCache
from papertrade.services.strategy_engine import StrategyEngine
from papertrade.stores.base import (
    Account,
    Instrument,
    InstrumentStore,
    PortfolioStore,
    Strategy,
    StrategyStore,
)
from papertrade.stores.memory import MemoryInstrumentStore, MemoryPortfolioStore, MemoryStrategyStore


class ServiceContainer:
    """
    Holds every service of one running application.

    Usage:
        container = await ServiceContainer.from_settings(settings)
        await container.start_all()
        ...
        await container.stop_all()
    """

    def __init__(
        self,
        strategy_store: StrategyStore,
        instrument_store: InstrumentStore,
        portfolio_store: PortfolioStore,
        audit_storage: Optional[AuditStorage] = None,
        signal_cache: Optional[SignalCache] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        db_engine: Optional[AsyncEngine] = None,
        session_factory: Optional[async_sessionmaker] = None,
    ):
        self.settings = settings or get_settings()
        trading = self.settings.trading
        signals = self.settings.signals
        market = self.settings.market_data

        self.clock = clock or SystemClock(ZoneInfo(trading.timezone))
        self.initial_balance = trading.initial_balance
        self.db_engine = db_engine
        self.session_factory = session_factory

        # Stores
        self.strategy_store = strategy_store
        self.instrument_store = instrument_store
        self.portfolio_store = portfolio_store

        # Market data
        self.price_cache = PriceCache(
            instrument_store=instrument_store,
            clock=self.clock,
            default_reference_price=trading.default_reference_price,
            subscriber_queue_size=market.subscriber_queue_size,
        )
        if market.simulated_feed_enabled:
            self.price_feed: PriceFeed = SimulatedPriceFeed(
                price_cache=self.price_cache,
                instrument_store=instrument_store,
                generator=PriceGenerator(
                    volatility=market.volatility,
                    mean_reversion=market.mean_reversion,
                    clock=self.clock,
                ),
                interval=market.feed_interval_seconds,
                clock=self.clock,
                default_reference_price=trading.default_reference_price,
            )
        else:
            self.price_feed = PriceFeed(self.price_cache)

        # Signal pipeline
        self.risk_manager = create_risk_manager(strategy_store, trading, self.clock)
        self.order_executor = create_order_executor(self.price_cache, portfolio_store, trading, self.clock)
        self.audit_trail = AuditTrail(storage=audit_storage or MemoryAuditStorage(), clock=self.clock)
        self.signal_cache = signal_cache or MemorySignalCache(signals.dedup_window_seconds, self.clock)
        self.error_handler = ErrorHandler(clock=self.clock)
        self.strategy_engine = StrategyEngine(
            strategy_store=strategy_store,
            instrument_store=instrument_store,
            price_cache=self.price_cache,
            risk_manager=self.risk_manager,
            order_executor=self.order_executor,
            audit_trail=self.audit_trail,
            signal_cache=self.signal_cache,
            error_handler=self.error_handler,
            clock=self.clock,
            metrics_log_limit=signals.metrics_log_limit,
        )

        # Realtime
        self.hub = RealTimeHub(self.price_cache, self.clock, market.subscriber_queue_size)
        self.broadcaster = PriceBroadcaster(
            self.price_cache,
            self.hub,
            interval=market.broadcast_interval_seconds,
            clock=self.clock,
        )

        self._started = False

    # =========================================================================
    # Construction
    # =========================================================================

    @classmethod
    def in_memory(
        cls,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        strategies: Iterable[Strategy] = (),
        instruments: Iterable[Instrument] = (),
        accounts: Iterable[Account] = (),
        audit_storage: Optional[AuditStorage] = None,
    ) -> "ServiceContainer":
        """Container over process-local stores."""
        return cls(
            strategy_store=MemoryStrategyStore(strategies),
            instrument_store=MemoryInstrumentStore(instruments),
            portfolio_store=MemoryPortfolioStore(accounts),
            audit_storage=audit_storage,
            settings=settings,
            clock=clock,
        )

    @classmethod
    async def from_settings(
        cls,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ) -> "ServiceContainer":
        """Build the container for STORAGE_BACKEND and the dedup backend."""
        settings = settings or get_settings()
        signals = settings.signals

        signal_cache: Optional[SignalCache] = None
        if signals.dedup_backend == "redis":
            redis = settings.redis
            signal_cache = RedisSignalCache.from_url(
                settings.REDIS_URL,
                ttl_seconds=signals.dedup_window_seconds,
                prefix=redis.key_prefix,
                socket_timeout=redis.socket_timeout,
            )

        if settings.STORAGE_BACKEND == "memory":
            logger.info("Using in-memory stores")
            return cls(
                strategy_store=MemoryStrategyStore(),
                instrument_store=MemoryInstrumentStore(),
                portfolio_store=MemoryPortfolioStore(),
                audit_storage=FileAuditStorage(settings.AUDIT_DIR),
                signal_cache=signal_cache,
                settings=settings,
                clock=clock,
            )

        engine = create_engine_from_settings(settings)
        await init_db(engine)
        session_factory = create_session_factory(engine)
        logger.info("Using database stores")
        return cls(
            strategy_store=SqlStrategyStore(session_factory),
            instrument_store=SqlInstrumentStore(session_factory),
            portfolio_store=SqlPortfolioStore(session_factory),
            audit_storage=SqlAuditStorage(session_factory),
            signal_cache=signal_cache,
            settings=settings,
            clock=clock,
            db_engine=engine,
            session_factory=session_factory,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def ensure_account(self, user_id: str) -> Decimal:
        """Open a virtual account with the initial balance if missing."""
        account = await self.portfolio_store.open_account(user_id, self.initial_balance)
        return account.balance

    async def start_all(self) -> None:
        if self._started:
            return
        logger.info("Starting services...")

        for strategy in await self.strategy_store.list(active_only=True):
            await self.ensure_account(strategy.user_id)

        await self.risk_manager.start()
        if isinstance(self.price_feed, SimulatedPriceFeed):
            await self.price_feed.start()
        await self.broadcaster.start()

        self._started = True
        logger.info("✓ All services started")

    async def stop_all(self) -> None:
        """Stop services in reverse order and release connections."""
        logger.info("Stopping services...")

        await self.broadcaster.stop()
        await self.hub.close()
        if isinstance(self.price_feed, SimulatedPriceFeed):
            await self.price_feed.stop()
        await self.risk_manager.stop()
        await self.signal_cache.close()
        await self.audit_trail.close()

        if self.db_engine is not None:
            await close_db(self.db_engine)

        self._started = False
        logger.info("✓ All services stopped")

    async def get_status(self) -> Dict[str, Any]:
        return {
            "started": self._started,
            "price_cache": self.price_cache.get_status(),
            "price_feed": self.price_feed.get_status(),
            "risk_manager": self.risk_manager.get_status(),
            "executor": self.order_executor.get_stats(),
            "strategy_engine": self.strategy_engine.get_stats(),
            "signal_cache_size": await self.signal_cache.size(),
            "audit": self.audit_trail.get_stats(),
            "realtime": self.hub.get_status(),
            "broadcaster": self.broadcaster.get_status(),
        }
