"""
Order Executor

Simulated market-order execution against the virtual ledger.
Supports:
- Adverse slippage (buy higher, sell lower) and latency simulation
- Statutory charges on both legs
- Atomic settlement of balance, holding and order book
- Realized P&L on sells, net of buy-leg and sell-leg charges

Usage:
    executor = OrderExecutor(price_cache, portfolio_store)
    result = await executor.execute_buy("user-1", "RELIANCE", 10)
    print(result.execution_price, result.remaining_balance)
"""

import asyncio
import functools
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from loguru import logger

from papertrade.core.clock import Clock, SystemClock
from papertrade.core.config import TradingSettings
from papertrade.core.locks import KeyedLock
from papertrade.core.errors import (
    InsufficientBalance,
    InsufficientShares,
    NoHolding,
    PriceUnavailable,
    TradingError,
    ValidationError,
)
from papertrade.execution.charges import (
    ChargeBreakdown,
    PnLBreakdown,
    TradeAmount,
    calculate_buy_amount,
    calculate_pnl,
    calculate_sell_amount,
    round_money,
)
from papertrade.services.price_cache import PriceCache
from papertrade.stores.base import (
    ExecutionMode,
    Holding,
    OrderRecord,
    OrderSide,
    PortfolioStore,
    ZERO,
)


MAX_SLIPPAGE_PERCENT = Decimal("1")
MAX_EXECUTION_DELAY_MS = 5000


@dataclass
class ExecutorConfig:
    """Order executor configuration."""
    mode: ExecutionMode = ExecutionMode.PAPER
    slippage_percent: Decimal = Decimal("0.1")
    execution_delay_ms: int = 500
    exchange: str = "NSE"
    segment: str = "DELIVERY"


@dataclass
class ExecutionResult:
    """Outcome of a committed order."""
    order: OrderRecord
    holding: Optional[Holding]
    execution_price: Decimal
    market_price: Decimal
    slippage: Decimal
    execution_time_ms: int
    charges: ChargeBreakdown
    remaining_balance: Decimal
    remaining_shares: int
    pnl: Optional[PnLBreakdown] = None

    @property
    def profit_loss(self) -> Decimal:
        """Realized P&L; zero for buys."""
        return self.pnl.net_pnl if self.pnl is not None else ZERO

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order": self.order.to_dict(),
            "holding": self.holding.to_dict() if self.holding else None,
            "execution_price": str(self.execution_price),
            "market_price": str(self.market_price),
            "slippage": str(self.slippage),
            "execution_time_ms": self.execution_time_ms,
            "charges": self.charges.to_dict(),
            "pnl": self.pnl.to_dict() if self.pnl else None,
            "remaining_balance": str(self.remaining_balance),
            "remaining_shares": self.remaining_shares,
        }


class OrderExecutor:
    """
    Executes market orders at the cached price.

    Settlement for one user is serialized by a per-user lock and runs as
    a single portfolio transaction under asyncio.shield, so a cancelled
    caller never leaves a half-applied trade behind.
    """

    def __init__(
        self,
        price_cache: PriceCache,
        portfolio_store: PortfolioStore,
        clock: Optional[Clock] = None,
        config: Optional[ExecutorConfig] = None,
    ):
        self.price_cache = price_cache
        self.portfolio_store = portfolio_store
        self.clock = clock or SystemClock()
        self.config = config or ExecutorConfig()

        self._user_locks = KeyedLock()

        self._stats = {
            "orders_executed": 0,
            "orders_failed": 0,
            "total_slippage": ZERO,
        }

    # =========================================================================
    # Configuration
    # =========================================================================

    def set_mode(self, mode: str) -> None:
        try:
            self.config.mode = ExecutionMode(str(mode).upper())
        except ValueError:
            raise ValidationError(f"Invalid execution mode: {mode}. Must be PAPER or LIVE")
        if self.config.mode == ExecutionMode.LIVE:
            logger.warning("Execution mode set to LIVE: orders still settle on the virtual ledger")
        else:
            logger.info("Execution mode set to PAPER")

    def set_slippage(self, percent: Any) -> None:
        value = Decimal(str(percent))
        if value < 0 or value > MAX_SLIPPAGE_PERCENT:
            raise ValidationError("Slippage must be between 0 and 1%")
        self.config.slippage_percent = value
        logger.info(f"Slippage set to {value}%")

    def set_execution_delay(self, delay_ms: int) -> None:
        if delay_ms < 0 or delay_ms > MAX_EXECUTION_DELAY_MS:
            raise ValidationError(f"Execution delay must be between 0 and {MAX_EXECUTION_DELAY_MS}ms")
        self.config.execution_delay_ms = int(delay_ms)
        logger.info(f"Execution delay set to {delay_ms}ms")

    def get_config(self) -> Dict[str, Any]:
        return {
            "mode": self.config.mode.value,
            "slippage_percent": float(self.config.slippage_percent),
            "execution_delay_ms": self.config.execution_delay_ms,
            "exchange": self.config.exchange,
            "segment": self.config.segment,
        }

    def get_stats(self) -> Dict[str, Any]:
        return {
            "orders_executed": self._stats["orders_executed"],
            "orders_failed": self._stats["orders_failed"],
            "settling_users": len(self._user_locks),
            "total_slippage": float(self._stats["total_slippage"]),
        }

    # =========================================================================
    # Helpers
    # =========================================================================

    def _generate_order_id(self) -> str:
        """Generate unique order ID."""
        return f"PAPER-{uuid.uuid4().hex[:12].upper()}"

    def _fill_price(self, market_price: Decimal, side: OrderSide) -> Tuple[Decimal, Decimal]:
        """Return (fill price, slippage percent applied)."""
        if self.config.mode == ExecutionMode.LIVE:
            return market_price, ZERO

        slippage = self.config.slippage_percent
        factor = slippage / 100
        if side == OrderSide.BUY:
            fill = market_price * (1 + factor)
        else:
            fill = market_price * (1 - factor)
        return round_money(fill), slippage

    async def _simulate_latency(self) -> None:
        if self.config.mode == ExecutionMode.PAPER and self.config.execution_delay_ms > 0:
            await self.clock.sleep(self.config.execution_delay_ms / 1000)

    async def _settle(self, user_id: str, commit: Callable[[], Awaitable[Any]]) -> Any:
        async with self._user_locks.hold(user_id):
            return await commit()

    async def _run_shielded(self, user_id: str, commit: Callable[[], Awaitable[Any]]) -> Any:
        return await asyncio.shield(self._settle(user_id, commit))

    def _market_price(self, symbol: str) -> Decimal:
        ltp = self.price_cache.get_ltp(symbol)
        if ltp is None or ltp <= 0:
            raise PriceUnavailable(symbol)
        return ltp

    # =========================================================================
    # Execution
    # =========================================================================

    async def execute(
        self,
        user_id: str,
        action: str,
        symbol: str,
        quantity: int,
        strategy_id: Optional[str] = None,
    ) -> ExecutionResult:
        """Dispatch to execute_buy / execute_sell."""
        if action == OrderSide.BUY.value:
            return await self.execute_buy(user_id, symbol, quantity, strategy_id)
        if action == OrderSide.SELL.value:
            return await self.execute_sell(user_id, symbol, quantity, strategy_id)
        raise ValidationError(f"Unknown action: {action}")

    async def execute_buy(
        self,
        user_id: str,
        symbol: str,
        quantity: int,
        strategy_id: Optional[str] = None,
    ) -> ExecutionResult:
        """
        Buy quantity shares at the cached price plus slippage.

        Raises:
            PriceUnavailable: No cached price for the symbol
            InsufficientBalance: Balance below gross amount plus charges
        """
        symbol = symbol.upper()
        started = self.clock.monotonic()
        try:
            market_price = self._market_price(symbol)
            fill, slippage = self._fill_price(market_price, OrderSide.BUY)
            await self._simulate_latency()

            amount = calculate_buy_amount(fill, quantity, self.config.exchange, self.config.segment)
            commit = functools.partial(
                self._commit_buy, user_id, symbol, quantity, fill, market_price, slippage, amount, strategy_id,
            )
            order, holding, balance = await self._run_shielded(user_id, commit)
        except TradingError as e:
            self._stats["orders_failed"] += 1
            logger.warning(f"BUY {quantity} {symbol} failed for {user_id}: {e.message}")
            raise

        elapsed_ms = int((self.clock.monotonic() - started) * 1000)
        self._stats["orders_executed"] += 1
        self._stats["total_slippage"] += (fill - market_price) * quantity

        logger.info(
            f"BUY {quantity} {symbol} @ ₹{fill} (market ₹{market_price}, "
            f"charges ₹{amount.charges.total}) order {order.order_id}"
        )
        return ExecutionResult(
            order=order,
            holding=holding,
            execution_price=fill,
            market_price=market_price,
            slippage=slippage,
            execution_time_ms=elapsed_ms,
            charges=amount.charges,
            remaining_balance=balance,
            remaining_shares=holding.quantity,
        )

    async def _commit_buy(
        self,
        user_id: str,
        symbol: str,
        quantity: int,
        fill: Decimal,
        market_price: Decimal,
        slippage: Decimal,
        amount: TradeAmount,
        strategy_id: Optional[str],
    ) -> Tuple[OrderRecord, Holding, Decimal]:
        now = self.clock.now()
        async with self.portfolio_store.transaction() as tx:
            if not await tx.debit_if_sufficient(user_id, amount.net_amount):
                available = await tx.get_balance(user_id) or ZERO
                raise InsufficientBalance(amount.net_amount, available)

            holding = await tx.get_holding(user_id, symbol)
            if holding is None:
                holding = Holding(
                    user_id=user_id,
                    symbol=symbol,
                    quantity=quantity,
                    average_buy_price=fill,
                    total_invested=amount.net_amount,
                    created_at=now,
                    updated_at=now,
                )
            else:
                new_quantity = holding.quantity + quantity
                # Unrounded; only money amounts are rounded
                holding.average_buy_price = (
                    (holding.average_buy_price * holding.quantity + amount.gross_amount) / new_quantity
                )
                holding.quantity = new_quantity
                holding.total_invested = round_money(holding.total_invested + amount.net_amount)
                holding.updated_at = now
            await tx.save_holding(holding)

            order = OrderRecord(
                order_id=self._generate_order_id(),
                user_id=user_id,
                strategy_id=strategy_id,
                symbol=symbol,
                side=OrderSide.BUY,
                quantity=quantity,
                price=fill,
                market_price=market_price,
                slippage_percent=slippage,
                gross_amount=amount.gross_amount,
                charges=amount.charges,
                total_amount=amount.net_amount,
                executed_at=now,
            )
            await tx.add_order(order)
            balance = await tx.get_balance(user_id) or ZERO

        return order, holding, balance

    async def execute_sell(
        self,
        user_id: str,
        symbol: str,
        quantity: int,
        strategy_id: Optional[str] = None,
    ) -> ExecutionResult:
        """
        Sell quantity shares at the cached price minus slippage.

        Raises:
            PriceUnavailable: No cached price for the symbol
            NoHolding: User holds no shares of the symbol
            InsufficientShares: Fewer shares held than requested
        """
        symbol = symbol.upper()
        started = self.clock.monotonic()
        try:
            market_price = self._market_price(symbol)
            fill, slippage = self._fill_price(market_price, OrderSide.SELL)
            await self._simulate_latency()

            amount = calculate_sell_amount(fill, quantity, self.config.exchange, self.config.segment)
            commit = functools.partial(
                self._commit_sell, user_id, symbol, quantity, fill, market_price, slippage, amount, strategy_id,
            )
            order, holding, balance, pnl = await self._run_shielded(user_id, commit)
        except TradingError as e:
            self._stats["orders_failed"] += 1
            logger.warning(f"SELL {quantity} {symbol} failed for {user_id}: {e.message}")
            raise

        elapsed_ms = int((self.clock.monotonic() - started) * 1000)
        self._stats["orders_executed"] += 1
        self._stats["total_slippage"] += (market_price - fill) * quantity

        logger.info(
            f"SELL {quantity} {symbol} @ ₹{fill} (market ₹{market_price}, "
            f"P&L ₹{pnl.net_pnl}) order {order.order_id}"
        )
        return ExecutionResult(
            order=order,
            holding=holding,
            execution_price=fill,
            market_price=market_price,
            slippage=slippage,
            execution_time_ms=elapsed_ms,
            charges=amount.charges,
            remaining_balance=balance,
            remaining_shares=holding.quantity if holding else 0,
            pnl=pnl,
        )

    async def _commit_sell(
        self,
        user_id: str,
        symbol: str,
        quantity: int,
        fill: Decimal,
        market_price: Decimal,
        slippage: Decimal,
        amount: TradeAmount,
        strategy_id: Optional[str],
    ) -> Tuple[OrderRecord, Optional[Holding], Decimal, PnLBreakdown]:
        now = self.clock.now()
        async with self.portfolio_store.transaction() as tx:
            holding = await tx.get_holding(user_id, symbol)
            if holding is None or holding.quantity <= 0:
                raise NoHolding(symbol)
            if quantity > holding.quantity:
                raise InsufficientShares(holding.quantity, quantity)

            buy_price = holding.average_buy_price
            pnl = calculate_pnl(
                buy_price,
                fill,
                quantity,
                sell_charges=amount.charges,
                exchange=self.config.exchange,
                segment=self.config.segment,
            )

            await tx.credit(user_id, amount.net_amount)

            remaining = holding.quantity - quantity
            if remaining == 0:
                await tx.delete_holding(user_id, symbol)
                kept: Optional[Holding] = None
            else:
                released = holding.total_invested / holding.quantity * quantity
                holding.total_invested = round_money(holding.total_invested - released)
                holding.quantity = remaining
                holding.updated_at = now
                await tx.save_holding(holding)
                kept = holding

            order = OrderRecord(
                order_id=self._generate_order_id(),
                user_id=user_id,
                strategy_id=strategy_id,
                symbol=symbol,
                side=OrderSide.SELL,
                quantity=quantity,
                price=fill,
                market_price=market_price,
                slippage_percent=slippage,
                gross_amount=amount.gross_amount,
                charges=amount.charges,
                total_amount=amount.net_amount,
                executed_at=now,
                buy_price=buy_price,
                profit_loss=pnl.net_pnl,
                profit_loss_percent=pnl.net_pnl_percent,
            )
            await tx.add_order(order)
            balance = await tx.get_balance(user_id) or ZERO

        return order, kept, balance, pnl


def create_order_executor(
    price_cache: PriceCache,
    portfolio_store: PortfolioStore,
    settings: Optional[TradingSettings] = None,
    clock: Optional[Clock] = None,
) -> OrderExecutor:
    """Create an executor configured from trading settings."""
    settings = settings or TradingSettings()
    config = ExecutorConfig(
        mode=ExecutionMode(settings.execution_mode),
        slippage_percent=Decimal(str(settings.slippage_percent)),
        execution_delay_ms=settings.execution_delay_ms,
        exchange=settings.exchange,
        segment=settings.segment,
    )
    return OrderExecutor(
        price_cache=price_cache,
        portfolio_store=portfolio_store,
        clock=clock,
        config=config,
    )
