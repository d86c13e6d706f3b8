"""
Domain Models
PaperTrade Platform

SQLAlchemy models for:
- Strategies (webhook secret, risk limits, statistics)
- Instruments
- Accounts (virtual balance)
- Holdings
- Orders
- Strategy log (audit trail)
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON, Boolean, DateTime, Integer, Numeric, String, Text, UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from papertrade.db.base import Base, Money, Price, TimestampMixin


class StrategyModel(TimestampMixin, Base):
    """
    Automated strategy fed by webhook signals.

    Never deleted; deactivated instead so audit history stays resolvable.
    """
    __tablename__ = "strategies"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    webhook_secret: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    mode: Mapped[str] = mapped_column(String(10), default="PAPER")  # PAPER, LIVE
    description: Mapped[Optional[str]] = mapped_column(Text)

    # Risk Parameters
    max_trades_per_day: Mapped[int] = mapped_column(Integer, default=10)
    max_loss_per_day: Mapped[Decimal] = mapped_column(Money, default=Decimal("5000"))
    max_capital_per_trade: Mapped[Decimal] = mapped_column(Money, default=Decimal("10000"))
    cooldown_seconds: Mapped[int] = mapped_column(Integer, default=60)
    capital_allocated: Mapped[Decimal] = mapped_column(Money, default=Decimal("100000"))

    # Statistics
    total_trades: Mapped[int] = mapped_column(Integer, default=0)
    total_profit: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    total_loss: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    win_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0"))
    last_executed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class InstrumentModel(Base):
    """Tradable instrument with a fallback reference price."""
    __tablename__ = "instruments"

    symbol: Mapped[str] = mapped_column(String(32), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), default="")
    exchange: Mapped[str] = mapped_column(String(10), default="NSE")
    reference_price: Mapped[Optional[Decimal]] = mapped_column(Money)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class AccountModel(TimestampMixin, Base):
    """Virtual cash balance of one user."""
    __tablename__ = "accounts"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    balance: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))


class HoldingModel(Base):
    """Open position of one user in one symbol. Quantity is always positive."""
    __tablename__ = "holdings"
    __table_args__ = (
        UniqueConstraint("user_id", "symbol", name="uq_holdings_user_symbol"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    average_buy_price: Mapped[Decimal] = mapped_column(Price, nullable=False)
    total_invested: Mapped[Decimal] = mapped_column(Money, nullable=False)

    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class OrderModel(Base):
    """Executed order. Append-only."""
    __tablename__ = "orders"

    order_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    strategy_id: Mapped[Optional[str]] = mapped_column(String(36), index=True)
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    side: Mapped[str] = mapped_column(String(4), nullable=False)  # BUY, SELL
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    market_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    slippage_percent: Mapped[Decimal] = mapped_column(Numeric(8, 4), default=Decimal("0"))
    gross_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    charges: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    total_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="COMPLETED")

    # Sell side only
    buy_price: Mapped[Optional[Decimal]] = mapped_column(Price)
    profit_loss: Mapped[Optional[Decimal]] = mapped_column(Money)
    profit_loss_percent: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2))

    executed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class StrategyLogModel(Base):
    """Audit trail entry. Append-only; never updated or deleted."""

    event_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)

    strategy_id: Mapped[Optional[str]] = mapped_column(String(36), index=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(64))
    symbol: Mapped[Optional[str]] = mapped_column(String(32))
    action: Mapped[Optional[str]] = mapped_column(String(4))
    quantity: Mapped[Optional[int]] = mapped_column(Integer)
    signal_data: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)

    reason: Mapped[Optional[str]] = mapped_column(Text)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    order_id: Mapped[Optional[str]] = mapped_column(String(32))
    execution_price: Mapped[Optional[Decimal]] = mapped_column(Money)
    slippage: Mapped[Optional[Decimal]] = mapped_column(Numeric(8, 4))
    profit_loss: Mapped[Optional[Decimal]] = mapped_column(Money)
    execution_time_ms: Mapped[Optional[int]] = mapped_column(Integer)

    # "metadata" is reserved on declarative classes
    event_metadata: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, default=dict)
