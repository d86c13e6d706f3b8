"""
Tests for the SQLAlchemy stores against a throwaway SQLite database.

SQLite stores timestamps without their offset, so assertions here avoid
comparing timezone-aware datetimes read back from the database.
"""

import tempfile
from decimal import Decimal
from pathlib import Path

import pytest
import pytest_asyncio

from conftest import SESSION_START, USER_ID, make_strategy
from papertrade.core.config import Settings
from papertrade.core.errors import InsufficientBalance
from papertrade.db.session import (
    close_db,
    create_engine_from_settings,
    create_session_factory,
    get_db_context,
    health_check,
    init_db,
)
from papertrade.db.models import AccountModel
from papertrade.db.stores import SqlAuditStorage, SqlInstrumentStore, SqlPortfolioStore, SqlStrategyStore
from papertrade.execution.order_executor import ExecutorConfig, OrderExecutor
from papertrade.services.audit_trail import AuditEvent, AuditEventType, AuditStatus
from papertrade.services.price_cache import PriceCache
from papertrade.stores.base import Instrument


@pytest_asyncio.fixture
async def session_factory():
    with tempfile.TemporaryDirectory() as tmpdir:
        url = f"sqlite+aiosqlite:///{Path(tmpdir) / 'papertrade.db'}"
        engine = create_engine_from_settings(Settings(), url=url)
        await init_db(engine)
        yield create_session_factory(engine)
        await close_db(engine)


@pytest_asyncio.fixture
async def sql_portfolio(session_factory):
    store = SqlPortfolioStore(session_factory)
    await store.open_account(USER_ID, Decimal("100000"))
    return store


class TestSession:
    """Tests for engine and session helpers."""

    @pytest.mark.asyncio
    async def test_health_check(self, session_factory):
        assert await health_check(session_factory)

    @pytest.mark.asyncio
    async def test_db_context_rolls_back_on_error(self, session_factory):
        with pytest.raises(RuntimeError):
            async with get_db_context(session_factory) as db:
                db.add(AccountModel(user_id="temp", balance=Decimal("1")))
                await db.flush()
                raise RuntimeError("abort")

        assert await SqlPortfolioStore(session_factory).get_balance("temp") is None


class TestSqlStrategyStore:
    """Tests for strategy persistence."""

    @pytest.mark.asyncio
    async def test_save_and_get(self, session_factory):
        store = SqlStrategyStore(session_factory)
        strategy = make_strategy()
        strategy.record_execution(Decimal("100"), SESSION_START)
        await store.save(strategy)

        loaded = await store.get("strat-1")
        assert loaded.name == "RSI crossover"
        assert loaded.total_trades == 1
        assert loaded.total_profit == Decimal("100")
        assert loaded.max_capital_per_trade == Decimal("10000")

    @pytest.mark.asyncio
    async def test_save_updates_existing(self, session_factory):
        store = SqlStrategyStore(session_factory)
        await store.save(make_strategy())
        await store.save(make_strategy(name="Renamed"))

        assert [s.name for s in await store.list()] == ["Renamed"]

    @pytest.mark.asyncio
    async def test_lookup_by_secret_requires_active(self, session_factory):
        store = SqlStrategyStore(session_factory)
        await store.save(make_strategy())
        await store.save(make_strategy(id="strat-2", webhook_secret="other", is_active=False))

        assert (await store.get_active_by_secret("test-secret")).id == "strat-1"
        assert await store.get_active_by_secret("other") is None
        assert [s.id for s in await store.list(active_only=True)] == ["strat-1"]

    @pytest.mark.asyncio
    async def test_deactivate_all(self, session_factory):
        store = SqlStrategyStore(session_factory)
        await store.save(make_strategy())
        await store.save(make_strategy(id="strat-2", webhook_secret="other"))

        assert sorted(await store.deactivate_all()) == ["strat-1", "strat-2"]
        assert await store.list(active_only=True) == []
        assert await store.deactivate_all() == []


class TestSqlInstrumentStore:
    """Tests for instrument persistence."""

    @pytest.mark.asyncio
    async def test_save_get_list(self, session_factory):
        store = SqlInstrumentStore(session_factory)
        await store.save(Instrument(symbol="TCS", name="TCS", reference_price=Decimal("3500")))
        await store.save(Instrument(symbol="OLD", is_active=False))
        await store.save(Instrument(symbol="TCS", name="Tata Consultancy", reference_price=Decimal("3600")))

        tcs = await store.get("TCS")
        assert tcs.name == "Tata Consultancy"
        assert tcs.reference_price == Decimal("3600")
        assert [i.symbol for i in await store.list_active()] == ["TCS"]


class TestSqlPortfolioStore:
    """Tests for ledger settlement through the executor."""

    @pytest.mark.asyncio
    async def test_open_account_is_idempotent(self, sql_portfolio):
        account = await sql_portfolio.open_account(USER_ID, Decimal("5"))
        assert account.balance == Decimal("100000")

    @pytest.mark.asyncio
    async def test_buy_and_sell_settle(self, sql_portfolio, clock):
        cache = PriceCache(clock=clock)
        cache.update("RELIANCE", {"ltp": 100})
        executor = OrderExecutor(
            cache, sql_portfolio, clock=clock,
            config=ExecutorConfig(slippage_percent=Decimal("0"), execution_delay_ms=0),
        )

        await executor.execute_buy(USER_ID, "RELIANCE", 10)
        assert await sql_portfolio.get_balance(USER_ID) == Decimal("98998.81")
        holding = await sql_portfolio.get_holding(USER_ID, "RELIANCE")
        assert holding.quantity == 10
        assert holding.total_invested == Decimal("1001.19")

        await executor.execute_sell(USER_ID, "RELIANCE", 4)
        holding = await sql_portfolio.get_holding(USER_ID, "RELIANCE")
        assert holding.quantity == 6
        assert holding.total_invested == Decimal("600.71")

        await executor.execute_sell(USER_ID, "RELIANCE", 6)
        assert await sql_portfolio.list_holdings(USER_ID) == []

        orders = await sql_portfolio.list_orders(USER_ID)
        assert [o.side.value for o in orders] == ["BUY", "SELL", "SELL"]
        assert orders[0].charges.total == Decimal("1.19")

    @pytest.mark.asyncio
    async def test_average_price_stored_beyond_paise(self, sql_portfolio, clock):
        cache = PriceCache(clock=clock)
        executor = OrderExecutor(
            cache, sql_portfolio, clock=clock,
            config=ExecutorConfig(slippage_percent=Decimal("0"), execution_delay_ms=0),
        )

        cache.update("RELIANCE", {"ltp": "100.01"})
        await executor.execute_buy(USER_ID, "RELIANCE", 1)
        cache.update("RELIANCE", {"ltp": "100.00"})
        await executor.execute_buy(USER_ID, "RELIANCE", 2)

        holding = await sql_portfolio.get_holding(USER_ID, "RELIANCE")
        assert holding.average_buy_price == Decimal("100.003333")

    @pytest.mark.asyncio
    async def test_failed_debit_rolls_back(self, sql_portfolio, clock):
        cache = PriceCache(clock=clock)
        cache.update("RELIANCE", {"ltp": 100})
        executor = OrderExecutor(cache, sql_portfolio, clock=clock, config=ExecutorConfig(execution_delay_ms=0))

        with pytest.raises(InsufficientBalance):
            await executor.execute_buy(USER_ID, "RELIANCE", 2000)

        assert await sql_portfolio.get_balance(USER_ID) == Decimal("100000")
        assert await sql_portfolio.list_orders(USER_ID) == []

    @pytest.mark.asyncio
    async def test_transaction_rolls_back_on_error(self, sql_portfolio):
        with pytest.raises(RuntimeError):
            async with sql_portfolio.transaction() as tx:
                assert await tx.debit_if_sufficient(USER_ID, Decimal("500"))
                raise RuntimeError("crash mid-settlement")

        assert await sql_portfolio.get_balance(USER_ID) == Decimal("100000")

    @pytest.mark.asyncio
    async def test_credit_opens_missing_account(self, sql_portfolio):
        async with sql_portfolio.transaction() as tx:
            await tx.credit("new-user", Decimal("250"))

        assert await sql_portfolio.get_balance("new-user") == Decimal("250")


class TestSqlAuditStorage:
    """Tests for the strategy_log table."""

    @pytest.mark.asyncio
    async def test_store_and_query(self, session_factory):
        storage = SqlAuditStorage(session_factory)
        for i, event_type in enumerate([AuditEventType.SIGNAL_RECEIVED, AuditEventType.ORDER_EXECUTED]):
            await storage.store(AuditEvent(
                event_id=f"evt-{i}",
                event_type=event_type,
                status=AuditStatus.SUCCESS,
                timestamp=SESSION_START.replace(second=i),
                strategy_id="strat-1",
                symbol="RELIANCE",
                execution_price=Decimal("100.10") if i else None,
                metadata={"checks": ["Market open"]},
            ))

        events = await storage.query(strategy_id="strat-1")
        assert [e.event_id for e in events] == ["evt-0", "evt-1"]
        assert events[1].execution_price == Decimal("100.10")
        assert events[1].metadata == {"checks": ["Market open"]}

        executed = await storage.query(event_types=[AuditEventType.ORDER_EXECUTED])
        assert [e.event_id for e in executed] == ["evt-1"]

        assert [e.event_id for e in await storage.query(limit=1)] == ["evt-1"]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
