"""
Risk Management Service

Pre-trade admission control for automated strategies:
- Daily trade count limit
- Daily realized loss limit
- Max capital per trade and allocated capital
- Cooldown between trades
- Exchange session window (09:15 - 15:30 IST, weekdays)

Checks run in a fixed order and the first failure is the reported
reason. The decision itself is a pure function of
(RiskState, Strategy, trade amount, now); the RiskManager only owns the
per-strategy state, the per-strategy locks and the midnight reset task.
"""

import asyncio
import math
from dataclasses import dataclass, field, replace
from datetime import datetime, time
from decimal import Decimal
from typing import Any, AsyncContextManager, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from loguru import logger

from papertrade.core.clock import Clock, SystemClock, next_midnight
from papertrade.core.config import TradingSettings
from papertrade.core.locks import KeyedLock
from papertrade.stores.base import Strategy, StrategyStore


class RiskLimit:
    """Names of the admission checks, in evaluation order."""
    STRATEGY_INACTIVE = "strategy_inactive"
    MAX_TRADES_PER_DAY = "max_trades_per_day"
    MAX_LOSS_PER_DAY = "max_loss_per_day"
    MAX_CAPITAL_PER_TRADE = "max_capital_per_trade"
    COOLDOWN = "cooldown"
    CAPITAL_ALLOCATED = "capital_allocated"
    MARKET_HOURS = "market_hours"


@dataclass(frozen=True)
class MarketSession:
    """Trading session window in the exchange's local timezone."""
    tz: ZoneInfo = field(default_factory=lambda: ZoneInfo("Asia/Kolkata"))
    open: time = time(9, 15)
    close: time = time(15, 30)

    def is_open(self, now: datetime) -> bool:
        local = now.astimezone(self.tz)
        if local.weekday() >= 5:
            return False
        minute = local.time().replace(second=0, microsecond=0)
        return self.open <= minute <= self.close

    def describe(self) -> str:
        return f"{self.open.strftime('%H:%M')} - {self.close.strftime('%H:%M')} IST"


@dataclass(frozen=True)
class RiskState:
    """Per-strategy counters for the current trading day."""
    trades_today: int = 0
    loss_today: Decimal = Decimal("0")
    last_trade_at: Optional[datetime] = None

    def with_trade(self, profit_loss: Decimal, at: datetime) -> "RiskState":
        loss = self.loss_today + abs(profit_loss) if profit_loss < 0 else self.loss_today
        return replace(
            self,
            trades_today=self.trades_today + 1,
            loss_today=loss,
            last_trade_at=at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trades_today": self.trades_today,
            "loss_today": str(self.loss_today),
            "last_trade_at": self.last_trade_at.isoformat() if self.last_trade_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RiskState":
        last = data.get("last_trade_at")
        return cls(
            trades_today=int(data.get("trades_today", 0)),
            loss_today=Decimal(str(data.get("loss_today", "0"))),
            last_trade_at=datetime.fromisoformat(last) if last else None,
        )


EMPTY_STATE = RiskState()


@dataclass(frozen=True)
class RiskDecision:
    """Outcome of an admission check."""
    allowed: bool
    reason: Optional[str] = None
    limit: Optional[str] = None
    checks: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "limit": self.limit,
            "checks": list(self.checks),
        }


def _money(value: Decimal) -> str:
    return f"₹{value:.2f}"


def evaluate_admission(
    state: RiskState,
    strategy: Strategy,
    trade_amount: Decimal,
    now: datetime,
    session: MarketSession,
) -> RiskDecision:
    """
    Decide whether a trade may proceed.

    Args:
        state: The strategy's counters for today
        strategy: Strategy carrying the risk configuration
        trade_amount: quantity x price of the proposed trade
        now: Current time (timezone aware)
        session: Exchange session window

    Returns:
        RiskDecision; on rejection reason/limit name the first failed check
    """
    checks: List[str] = []

    def reject(reason: str, limit: str) -> RiskDecision:
        return RiskDecision(allowed=False, reason=reason, limit=limit, checks=tuple(checks))

    if not strategy.is_active:
        return reject("Strategy is not active", RiskLimit.STRATEGY_INACTIVE)
    checks.append("Strategy active")

    if state.trades_today >= strategy.max_trades_per_day:
        return reject(
            f"Max trades per day limit reached ({strategy.max_trades_per_day})",
            RiskLimit.MAX_TRADES_PER_DAY,
        )
    checks.append(f"Trades today: {state.trades_today}/{strategy.max_trades_per_day}")

    if state.loss_today >= strategy.max_loss_per_day:
        return reject(
            f"Max daily loss limit reached ({_money(strategy.max_loss_per_day)})",
            RiskLimit.MAX_LOSS_PER_DAY,
        )
    checks.append(f"Loss today: {_money(state.loss_today)}/{_money(strategy.max_loss_per_day)}")

    if trade_amount > strategy.max_capital_per_trade:
        return reject(
            f"Trade amount ({_money(trade_amount)}) exceeds max capital per trade "
            f"({_money(strategy.max_capital_per_trade)})",
            RiskLimit.MAX_CAPITAL_PER_TRADE,
        )
    checks.append(f"Trade amount: {_money(trade_amount)}/{_money(strategy.max_capital_per_trade)}")

    if state.last_trade_at is not None:
        elapsed = (now - state.last_trade_at).total_seconds()
        if elapsed < strategy.cooldown_seconds:
            remaining = math.ceil(strategy.cooldown_seconds - elapsed)
            return reject(
                f"Cooldown active. Wait {remaining}s before next trade",
                RiskLimit.COOLDOWN,
            )
        checks.append(f"Cooldown: {int(elapsed)}s since last trade")
    else:
        checks.append("Cooldown: no previous trade")

    if trade_amount > strategy.capital_allocated:
        return reject(
            f"Insufficient capital allocated ({_money(strategy.capital_allocated)})",
            RiskLimit.CAPITAL_ALLOCATED,
        )
    checks.append(f"Capital allocated: {_money(strategy.capital_allocated)}")

    if not session.is_open(now):
        return reject(
            f"Market is closed. Trading hours: {session.describe()}",
            RiskLimit.MARKET_HOURS,
        )
    checks.append("Market open")

    return RiskDecision(allowed=True, checks=tuple(checks))


class RiskManager:
    """
    Admission controller holding per-strategy RiskState.

    Usage:
        risk = RiskManager(strategy_store=store, clock=SystemClock())
        await risk.start()  # schedules the midnight reset

        async with risk.lock(strategy.id):
            decision = risk.validate(strategy, Decimal("1000"))
            if decision.allowed:
                ...execute...
                risk.record(strategy.id, pnl)
    """

    def __init__(
        self,
        strategy_store: Optional[StrategyStore] = None,
        clock: Optional[Clock] = None,
        session: Optional[MarketSession] = None,
    ):
        self.strategy_store = strategy_store
        self.session = session or MarketSession()
        self.clock = clock or SystemClock(self.session.tz)

        self._states: Dict[str, RiskState] = {}
        self._locks = KeyedLock()

        self._reset_task: Optional[asyncio.Task] = None
        self._running = False
        self._last_reset: Optional[datetime] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start the daily reset scheduler."""
        if self._running:
            return
        self._running = True
        self._reset_task = asyncio.create_task(self._daily_reset_loop())
        logger.info("Risk manager started")

    async def stop(self) -> None:
        self._running = False
        if self._reset_task:
            self._reset_task.cancel()
            try:
                await self._reset_task
            except asyncio.CancelledError:
                pass
            self._reset_task = None
        logger.info("Risk manager stopped")

    async def _daily_reset_loop(self) -> None:
        while self._running:
            midnight = next_midnight(self.clock.now().astimezone(self.session.tz))
            logger.debug(f"Next risk counter reset at {midnight.isoformat()}")
            await self.clock.sleep_until(midnight)
            self.reset_daily_counters()

    # =========================================================================
    # Admission
    # =========================================================================

    def lock(self, strategy_id: str) -> AsyncContextManager[None]:
        """Per-strategy mutex serializing validate -> execute -> record."""
        return self._locks.hold(strategy_id)

    def is_locked(self, strategy_id: str) -> bool:
        return self._locks.locked(strategy_id)

    def get_state(self, strategy_id: str) -> RiskState:
        return self._states.get(strategy_id, EMPTY_STATE)

    def validate(
        self,
        strategy: Strategy,
        trade_amount: Decimal,
        now: Optional[datetime] = None,
    ) -> RiskDecision:
        """Run the admission checks. Never mutates counters."""
        return evaluate_admission(
            self.get_state(strategy.id),
            strategy,
            trade_amount,
            now or self.clock.now(),
            self.session,
        )

    def record(
        self,
        strategy_id: str,
        profit_loss: Decimal,
        at: Optional[datetime] = None,
    ) -> RiskState:
        """Advance counters after a committed execution."""
        state = self.get_state(strategy_id).with_trade(profit_loss, at or self.clock.now())
        self._states[strategy_id] = state
        logger.debug(f"Risk state for {strategy_id}: {state.to_dict()}")
        return state

    def is_market_open(self, now: Optional[datetime] = None) -> bool:
        return self.session.is_open(now or self.clock.now())

    # =========================================================================
    # Administration
    # =========================================================================

    def reset_daily_counters(self) -> None:
        count = len(self._states)
        self._states = {}
        self._last_reset = self.clock.now()
        logger.info(f"Daily risk counters reset ({count} strategies)")

    def reset_strategy_counters(self, strategy_id: str) -> None:
        self._states.pop(strategy_id, None)
        logger.warning(f"Risk counters manually reset for strategy {strategy_id}")

    async def emergency_stop(self) -> List[str]:
        """Deactivate every strategy and clear all counters."""
        deactivated: List[str] = []
        if self.strategy_store is not None:
            deactivated = await self.strategy_store.deactivate_all()
        self._states = {}
        logger.critical(f"EMERGENCY STOP: {len(deactivated)} strategies deactivated")
        return deactivated

    def get_risk_stats(self, strategy_id: str) -> Dict[str, Any]:
        state = self.get_state(strategy_id)
        return {
            "trades_executed_today": state.trades_today,
            "daily_loss": str(state.loss_today),
            "last_trade_time": state.last_trade_at.isoformat() if state.last_trade_at else None,
            "market_open": self.is_market_open(),
        }

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "tracked_strategies": len(self._states),
            "locked_strategies": len(self._locks),
            "last_reset": self._last_reset.isoformat() if self._last_reset else None,
            "market_open": self.is_market_open(),
        }


def create_risk_manager(
    strategy_store: Optional[StrategyStore] = None,
    settings: Optional[TradingSettings] = None,
    clock: Optional[Clock] = None,
) -> RiskManager:
    """Create a risk manager with the session window from trading settings."""
    settings = settings or TradingSettings()
    session = MarketSession(
        tz=ZoneInfo(settings.timezone),
        open=settings.market_open,
        close=settings.market_close,
    )
    return RiskManager(strategy_store=strategy_store, clock=clock, session=session)
