"""
Domain Records & Store Contracts
PaperTrade Platform

Plain dataclasses for strategies, instruments, accounts, holdings and
orders, plus the abstract stores the pipeline reads and writes through.
Two implementations exist: in-memory (papertrade.stores.memory) and
SQLAlchemy (papertrade.db.stores).
"""

import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, AsyncContextManager, Dict, List, Optional

from papertrade.execution.charges import ChargeBreakdown


class OrderSide(str, Enum):
    """Order side."""
    BUY = "BUY"
    SELL = "SELL"


class OrderStatus(str, Enum):
    """Order status."""
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ExecutionMode(str, Enum):
    """Where orders are routed."""
    PAPER = "PAPER"
    LIVE = "LIVE"


ZERO = Decimal("0")
HUNDRED = Decimal("100")
CENT = Decimal("0.01")


def generate_webhook_secret() -> str:
    return secrets.token_hex(32)


@dataclass
class Strategy:
    """
    Automated strategy receiving external signals.

    Risk limits are enforced by the RiskManager; statistics are only
    mutated by the StrategyEngine after a committed execution.
    """
    id: str
    user_id: str
    name: str
    symbol: str
    webhook_secret: str = field(default_factory=generate_webhook_secret)
    is_active: bool = True
    mode: ExecutionMode = ExecutionMode.PAPER
    description: str = ""

    # Risk configuration
    max_trades_per_day: int = 10
    max_loss_per_day: Decimal = Decimal("5000")
    max_capital_per_trade: Decimal = Decimal("10000")
    cooldown_seconds: int = 60
    capital_allocated: Decimal = Decimal("100000")

    # Statistics
    total_trades: int = 0
    total_profit: Decimal = ZERO
    total_loss: Decimal = ZERO
    win_rate: Decimal = ZERO
    last_executed_at: Optional[datetime] = None

    def record_execution(self, profit_loss: Decimal, at: datetime) -> None:
        """Fold one committed execution into the running statistics."""
        self.total_trades += 1
        if profit_loss >= 0:
            self.total_profit += profit_loss
        else:
            self.total_loss += abs(profit_loss)

        denominator = self.total_profit + self.total_loss
        if denominator > 0:
            self.win_rate = (self.total_profit / denominator * HUNDRED).quantize(CENT)
        else:
            self.win_rate = ZERO
        self.last_executed_at = at

    def copy(self) -> "Strategy":
        return replace(self)

    def to_dict(self, include_secret: bool = False) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "symbol": self.symbol,
            "is_active": self.is_active,
            "mode": self.mode.value,
            "description": self.description,
            "risk": {
                "max_trades_per_day": self.max_trades_per_day,
                "max_loss_per_day": str(self.max_loss_per_day),
                "max_capital_per_trade": str(self.max_capital_per_trade),
                "cooldown_seconds": self.cooldown_seconds,
                "capital_allocated": str(self.capital_allocated),
            },
            "stats": {
                "total_trades": self.total_trades,
                "total_profit": str(self.total_profit),
                "total_loss": str(self.total_loss),
                "win_rate": str(self.win_rate),
                "last_executed_at": self.last_executed_at.isoformat() if self.last_executed_at else None,
            },
        }
        if include_secret:
            data["webhook_secret"] = self.webhook_secret
        return data


@dataclass
class Instrument:
    """Tradable instrument with a fallback reference price."""
    symbol: str
    name: str = ""
    exchange: str = "NSE"
    reference_price: Optional[Decimal] = None
    is_active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "name": self.name,
            "exchange": self.exchange,
            "reference_price": str(self.reference_price) if self.reference_price is not None else None,
            "is_active": self.is_active,
        }


@dataclass
class Account:
    user_id: str
    balance: Decimal = ZERO


@dataclass
class Holding:
    """
    Position of one user in one symbol.

    average_buy_price excludes charges; total_invested includes them.
    """
    user_id: str
    symbol: str
    quantity: int
    average_buy_price: Decimal
    total_invested: Decimal
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def copy(self) -> "Holding":
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "symbol": self.symbol,
            "quantity": self.quantity,
            "average_buy_price": str(self.average_buy_price),
            "total_invested": str(self.total_invested),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass(frozen=True)
class OrderRecord:
    """Executed order. Immutable once written."""
    order_id: str
    user_id: str
    symbol: str
    side: OrderSide
    quantity: int
    price: Decimal
    market_price: Decimal
    slippage_percent: Decimal
    gross_amount: Decimal
    charges: ChargeBreakdown
    total_amount: Decimal
    executed_at: datetime
    strategy_id: Optional[str] = None
    status: OrderStatus = OrderStatus.COMPLETED
    buy_price: Optional[Decimal] = None
    profit_loss: Optional[Decimal] = None
    profit_loss_percent: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "user_id": self.user_id,
            "strategy_id": self.strategy_id,
            "symbol": self.symbol,
            "side": self.side.value,
            "quantity": self.quantity,
            "price": str(self.price),
            "market_price": str(self.market_price),
            "slippage_percent": str(self.slippage_percent),
            "gross_amount": str(self.gross_amount),
            "charges": self.charges.to_dict(),
            "total_amount": str(self.total_amount),
            "status": self.status.value,
            "buy_price": str(self.buy_price) if self.buy_price is not None else None,
            "profit_loss": str(self.profit_loss) if self.profit_loss is not None else None,
            "profit_loss_percent": str(self.profit_loss_percent) if self.profit_loss_percent is not None else None,
            "executed_at": self.executed_at.isoformat(),
        }


# =============================================================================
# Store contracts
# =============================================================================

class StrategyStore(ABC):
    """Keyed strategy records."""

    @abstractmethod
    async def get(self, strategy_id: str) -> Optional[Strategy]:
        ...

    @abstractmethod
    async def get_active_by_secret(self, secret: str) -> Optional[Strategy]:
        ...

    @abstractmethod
    async def list(self, active_only: bool = False) -> List[Strategy]:
        ...

    @abstractmethod
    async def save(self, strategy: Strategy) -> None:
        """Insert or update statistics and activity flag."""

    @abstractmethod
    async def deactivate_all(self) -> List[str]:
        """Deactivate every active strategy and return their ids."""


class InstrumentStore(ABC):
    """Instrument and reference-price lookup."""

    @abstractmethod
    async def get(self, symbol: str) -> Optional[Instrument]:
        ...

    @abstractmethod
    async def list_active(self) -> List[Instrument]:
        ...

    @abstractmethod
    async def save(self, instrument: Instrument) -> None:
        ...


class PortfolioTransaction(ABC):
    """
    Unit of work over balances, holdings and orders.

    Changes become visible only when the surrounding transaction()
    context exits cleanly.
    """

    @abstractmethod
    async def debit_if_sufficient(self, user_id: str, amount: Decimal) -> bool:
        ...

    @abstractmethod
    async def credit(self, user_id: str, amount: Decimal) -> None:
        ...

    @abstractmethod
    async def get_balance(self, user_id: str) -> Optional[Decimal]:
        ...

    @abstractmethod
    async def get_holding(self, user_id: str, symbol: str) -> Optional[Holding]:
        ...

    @abstractmethod
    async def save_holding(self, holding: Holding) -> None:
        ...

    @abstractmethod
    async def delete_holding(self, user_id: str, symbol: str) -> None:
        ...

    @abstractmethod
    async def add_order(self, order: OrderRecord) -> None:
        ...


class PortfolioStore(ABC):
    """Balances, holdings and the order book of every user."""

    @abstractmethod
    async def get_balance(self, user_id: str) -> Optional[Decimal]:
        ...

    @abstractmethod
    async def open_account(self, user_id: str, balance: Decimal) -> Account:
        ...

    @abstractmethod
    async def get_holding(self, user_id: str, symbol: str) -> Optional[Holding]:
        ...

    @abstractmethod
    async def list_holdings(self, user_id: str) -> List[Holding]:
        ...

    @abstractmethod
    async def list_orders(self, user_id: str, limit: int = 100) -> List[OrderRecord]:
        ...

    @abstractmethod
    def transaction(self) -> AsyncContextManager[PortfolioTransaction]:
        ...
