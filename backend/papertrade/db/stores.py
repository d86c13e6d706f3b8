"""
SQL Stores
PaperTrade Platform

SQLAlchemy implementations of the store contracts in
papertrade.stores.base. Each store method opens its own session; the
portfolio transaction holds one session with an open transaction for
its whole lifetime.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import AsyncIterator, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from papertrade.db.models import (
    AccountModel,
    HoldingModel,
    InstrumentModel,
    OrderModel,
    StrategyLogModel,
    StrategyModel,
)
from papertrade.execution.charges import ChargeBreakdown
from papertrade.services.audit_trail import (
    AuditEvent,
    AuditEventType,
    AuditStatus,
    AuditStorage,
)
from papertrade.stores.base import (
    Account,
    ExecutionMode,
    Holding,
    Instrument,
    InstrumentStore,
    OrderRecord,
    OrderSide,
    OrderStatus,
    PortfolioStore,
    PortfolioTransaction,
    Strategy,
    StrategyStore,
)


# =============================================================================
# Row <-> record mapping
# =============================================================================

def _to_strategy(row: StrategyModel) -> Strategy:
    return Strategy(
        id=row.id,
        user_id=row.user_id,
        name=row.name,
        symbol=row.symbol,
        webhook_secret=row.webhook_secret,
        is_active=row.is_active,
        mode=ExecutionMode(row.mode),
        description=row.description or "",
        max_trades_per_day=row.max_trades_per_day,
        max_loss_per_day=row.max_loss_per_day,
        max_capital_per_trade=row.max_capital_per_trade,
        cooldown_seconds=row.cooldown_seconds,
        capital_allocated=row.capital_allocated,
        total_trades=row.total_trades,
        total_profit=row.total_profit,
        total_loss=row.total_loss,
        win_rate=row.win_rate,
        last_executed_at=row.last_executed_at,
    )


def _to_instrument(row: InstrumentModel) -> Instrument:
    return Instrument(
        symbol=row.symbol,
        name=row.name or "",
        exchange=row.exchange,
        reference_price=row.reference_price,
        is_active=row.is_active,
    )


def _to_holding(row: HoldingModel) -> Holding:
    return Holding(
        user_id=row.user_id,
        symbol=row.symbol,
        quantity=row.quantity,
        average_buy_price=row.average_buy_price,
        total_invested=row.total_invested,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _to_order(row: OrderModel) -> OrderRecord:
    return OrderRecord(
        order_id=row.order_id,
        user_id=row.user_id,
        strategy_id=row.strategy_id,
        symbol=row.symbol,
        side=OrderSide(row.side),
        quantity=row.quantity,
        price=row.price,
        market_price=row.market_price,
        slippage_percent=row.slippage_percent,
        gross_amount=row.gross_amount,
        charges=ChargeBreakdown.from_dict(row.charges or {}),
        total_amount=row.total_amount,
        status=OrderStatus(row.status),
        buy_price=row.buy_price,
        profit_loss=row.profit_loss,
        profit_loss_percent=row.profit_loss_percent,
        executed_at=row.executed_at,
    )


# =============================================================================
# Strategies & Instruments
# =============================================================================

class SqlStrategyStore(StrategyStore):
    """Strategies table access."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def get(self, strategy_id: str) -> Optional[Strategy]:
        async with self.session_factory() as session:
            row = await session.get(StrategyModel, strategy_id)
            return _to_strategy(row) if row else None

    async def get_active_by_secret(self, secret: str) -> Optional[Strategy]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(StrategyModel)
                .where(StrategyModel.webhook_secret == secret)
                .where(StrategyModel.is_active == True)  # noqa: E712
            )
            row = result.scalar_one_or_none()
            return _to_strategy(row) if row else None

    async def list(self, active_only: bool = False) -> List[Strategy]:
        query = select(StrategyModel).order_by(StrategyModel.name)
        if active_only:
            query = query.where(StrategyModel.is_active == True)  # noqa: E712
        async with self.session_factory() as session:
            result = await session.execute(query)
            return [_to_strategy(row) for row in result.scalars().all()]

    async def save(self, strategy: Strategy) -> None:
        async with self.session_factory() as session, session.begin():
            row = await session.get(StrategyModel, strategy.id)
            if row is None:
                row = StrategyModel(id=strategy.id)
                session.add(row)
            row.user_id = strategy.user_id
            row.name = strategy.name
            row.symbol = strategy.symbol
            row.webhook_secret = strategy.webhook_secret
            row.is_active = strategy.is_active
            row.mode = strategy.mode.value
            row.description = strategy.description
            row.max_trades_per_day = strategy.max_trades_per_day
            row.max_loss_per_day = strategy.max_loss_per_day
            row.max_capital_per_trade = strategy.max_capital_per_trade
            row.cooldown_seconds = strategy.cooldown_seconds
            row.capital_allocated = strategy.capital_allocated
            row.total_trades = strategy.total_trades
            row.total_profit = strategy.total_profit
            row.total_loss = strategy.total_loss
            row.win_rate = strategy.win_rate
            row.last_executed_at = strategy.last_executed_at

    async def deactivate_all(self) -> List[str]:
        async with self.session_factory() as session, session.begin():
            result = await session.execute(
                select(StrategyModel.id).where(StrategyModel.is_active == True)  # noqa: E712
            )
            ids = list(result.scalars().all())
            if ids:
                await session.execute(
                    update(StrategyModel)
                    .where(StrategyModel.id.in_(ids))
                    .values(is_active=False)
                    .execution_options(synchronize_session=False)
                )
            return ids


class SqlInstrumentStore(InstrumentStore):
    """Instruments table access."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def get(self, symbol: str) -> Optional[Instrument]:
        async with self.session_factory() as session:
            row = await session.get(InstrumentModel, symbol)
            return _to_instrument(row) if row else None

    async def list_active(self) -> List[Instrument]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(InstrumentModel)
                .where(InstrumentModel.is_active == True)  # noqa: E712
                .order_by(InstrumentModel.symbol)
            )
            return [_to_instrument(row) for row in result.scalars().all()]

    async def save(self, instrument: Instrument) -> None:
        async with self.session_factory() as session, session.begin():
            await session.merge(InstrumentModel(
                symbol=instrument.symbol,
                name=instrument.name,
                exchange=instrument.exchange,
                reference_price=instrument.reference_price,
                is_active=instrument.is_active,
            ))


# =============================================================================
# Portfolio
# =============================================================================

class SqlPortfolioTransaction(PortfolioTransaction):
    """Unit of work bound to one session inside session.begin()."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_balance(self, user_id: str) -> Optional[Decimal]:
        result = await self.session.execute(
            select(AccountModel.balance).where(AccountModel.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def debit_if_sufficient(self, user_id: str, amount: Decimal) -> bool:
        # Conditional UPDATE so concurrent debits cannot overdraw
        result = await self.session.execute(
            update(AccountModel)
            .where(AccountModel.user_id == user_id)
            .where(AccountModel.balance >= amount)
            .values(balance=AccountModel.balance - amount)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def credit(self, user_id: str, amount: Decimal) -> None:
        result = await self.session.execute(
            update(AccountModel)
            .where(AccountModel.user_id == user_id)
            .values(balance=AccountModel.balance + amount)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.session.add(AccountModel(user_id=user_id, balance=amount))

    async def _holding_row(self, user_id: str, symbol: str) -> Optional[HoldingModel]:
        result = await self.session.execute(
            select(HoldingModel)
            .where(HoldingModel.user_id == user_id)
            .where(HoldingModel.symbol == symbol)
        )
        return result.scalar_one_or_none()

    async def get_holding(self, user_id: str, symbol: str) -> Optional[Holding]:
        row = await self._holding_row(user_id, symbol)
        return _to_holding(row) if row else None

    async def save_holding(self, holding: Holding) -> None:
        row = await self._holding_row(holding.user_id, holding.symbol)
        if row is None:
            row = HoldingModel(user_id=holding.user_id, symbol=holding.symbol)
            self.session.add(row)
        row.quantity = holding.quantity
        row.average_buy_price = holding.average_buy_price
        row.total_invested = holding.total_invested
        row.created_at = holding.created_at
        row.updated_at = holding.updated_at
        await self.session.flush()

    async def delete_holding(self, user_id: str, symbol: str) -> None:
        row = await self._holding_row(user_id, symbol)
        if row is not None:
            await self.session.delete(row)
            await self.session.flush()

    async def add_order(self, order: OrderRecord) -> None:
        self.session.add(OrderModel(
            order_id=order.order_id,
            user_id=order.user_id,
            strategy_id=order.strategy_id,
            symbol=order.symbol,
            side=order.side.value,
            quantity=order.quantity,
            price=order.price,
            market_price=order.market_price,
            slippage_percent=order.slippage_percent,
            gross_amount=order.gross_amount,
            charges=order.charges.to_dict(),
            total_amount=order.total_amount,
            status=order.status.value,
            buy_price=order.buy_price,
            profit_loss=order.profit_loss,
            profit_loss_percent=order.profit_loss_percent,
            executed_at=order.executed_at,
        ))
        await self.session.flush()


class SqlPortfolioStore(PortfolioStore):
    """Accounts, holdings and orders tables."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def get_balance(self, user_id: str) -> Optional[Decimal]:
        async with self.session_factory() as session:
            return await SqlPortfolioTransaction(session).get_balance(user_id)

    async def open_account(self, user_id: str, balance: Decimal) -> Account:
        async with self.session_factory() as session, session.begin():
            row = await session.get(AccountModel, user_id)
            if row is None:
                row = AccountModel(user_id=user_id, balance=balance)
                session.add(row)
            return Account(user_id=row.user_id, balance=row.balance)

    async def get_holding(self, user_id: str, symbol: str) -> Optional[Holding]:
        async with self.session_factory() as session:
            return await SqlPortfolioTransaction(session).get_holding(user_id, symbol)

    async def list_holdings(self, user_id: str) -> List[Holding]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(HoldingModel)
                .where(HoldingModel.user_id == user_id)
                .order_by(HoldingModel.symbol)
            )
            return [_to_holding(row) for row in result.scalars().all()]

    async def list_orders(self, user_id: str, limit: int = 100) -> List[OrderRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(OrderModel)
                .where(OrderModel.user_id == user_id)
                .order_by(OrderModel.executed_at.desc())
                .limit(limit)
            )
            rows = list(result.scalars().all())
        return [_to_order(row) for row in reversed(rows)]

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SqlPortfolioTransaction]:
        async with self.session_factory() as session, session.begin():
            yield SqlPortfolioTransaction(session)


# =============================================================================
# Audit
# =============================================================================

class SqlAuditStorage(AuditStorage):
    """Appends audit events to the strategy_log table."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def store(self, event: AuditEvent) -> None:
        async with self.session_factory() as session, session.begin():
            session.add(StrategyLogModel(
                event_id=event.event_id,
                event_type=event.event_type.value,
                status=event.status.value,
                timestamp=event.timestamp,
                strategy_id=event.strategy_id,
                user_id=event.user_id,
                symbol=event.symbol,
                action=event.action,
                quantity=event.quantity,
                signal_data=event.signal_data,
                reason=event.reason,
                error_message=event.error_message,
                order_id=event.order_id,
                execution_price=event.execution_price,
                slippage=event.slippage,
                profit_loss=event.profit_loss,
                execution_time_ms=event.execution_time_ms,
                event_metadata=event.metadata,
            ))

    async def query(
        self,
        event_types: Optional[List[AuditEventType]] = None,
        strategy_id: Optional[str] = None,
        symbol: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        query = select(StrategyLogModel)
        if event_types:
            query = query.where(StrategyLogModel.event_type.in_([t.value for t in event_types]))
        if strategy_id:
            query = query.where(StrategyLogModel.strategy_id == strategy_id)
        if symbol:
            query = query.where(StrategyLogModel.symbol == symbol)
        if start_time:
            query = query.where(StrategyLogModel.timestamp >= start_time)
        if end_time:
            query = query.where(StrategyLogModel.timestamp <= end_time)
        query = query.order_by(StrategyLogModel.timestamp.desc())
        if limit:
            query = query.limit(limit)

        async with self.session_factory() as session:
            result = await session.execute(query)
            rows = list(result.scalars().all())

        return [
            AuditEvent(
                event_id=row.event_id,
                event_type=AuditEventType(row.event_type),
                status=AuditStatus(row.status),
                timestamp=row.timestamp,
                strategy_id=row.strategy_id,
                user_id=row.user_id,
                symbol=row.symbol,
                action=row.action,
                quantity=row.quantity,
                signal_data=row.signal_data or {},
                reason=row.reason,
                error_message=row.error_message,
                order_id=row.order_id,
                execution_price=row.execution_price,
                slippage=row.slippage,
                profit_loss=row.profit_loss,
                execution_time_ms=row.execution_time_ms,
                metadata=row.event_metadata or {},
            )
            for row in reversed(rows)
        ]
