"""
In-Memory Stores
PaperTrade Platform

Process-local implementations of the store contracts. Used by tests and
by the "memory" storage backend.
"""

from contextlib import asynccontextmanager
from decimal import Decimal
from typing import AsyncIterator, Dict, Iterable, List, Optional, Tuple

from papertrade.stores.base import (
    Account,
    Holding,
    Instrument,
    InstrumentStore,
    OrderRecord,
    PortfolioStore,
    PortfolioTransaction,
    Strategy,
    StrategyStore,
)


HoldingKey = Tuple[str, str]
_DELETED = object()


class MemoryStrategyStore(StrategyStore):

    def __init__(self, strategies: Iterable[Strategy] = ()):
        self._strategies: Dict[str, Strategy] = {s.id: s.copy() for s in strategies}

    async def get(self, strategy_id: str) -> Optional[Strategy]:
        strategy = self._strategies.get(strategy_id)
        return strategy.copy() if strategy else None

    async def get_active_by_secret(self, secret: str) -> Optional[Strategy]:
        for strategy in self._strategies.values():
            if strategy.is_active and strategy.webhook_secret == secret:
                return strategy.copy()
        return None

    async def list(self, active_only: bool = False) -> List[Strategy]:
        return [
            s.copy() for s in self._strategies.values()
            if s.is_active or not active_only
        ]

    async def save(self, strategy: Strategy) -> None:
        self._strategies[strategy.id] = strategy.copy()

    async def deactivate_all(self) -> List[str]:
        deactivated = []
        for strategy in self._strategies.values():
            if strategy.is_active:
                strategy.is_active = False
                deactivated.append(strategy.id)
        return deactivated


class MemoryInstrumentStore(InstrumentStore):

    def __init__(self, instruments: Iterable[Instrument] = ()):
        self._instruments: Dict[str, Instrument] = {i.symbol: i for i in instruments}

    async def get(self, symbol: str) -> Optional[Instrument]:
        return self._instruments.get(symbol)

    async def list_active(self) -> List[Instrument]:
        return [i for i in self._instruments.values() if i.is_active]

    async def save(self, instrument: Instrument) -> None:
        self._instruments[instrument.symbol] = instrument


class MemoryPortfolioTransaction(PortfolioTransaction):
    """Stages writes over a MemoryPortfolioStore until commit()."""

    def __init__(self, store: "MemoryPortfolioStore"):
        self._store = store
        self._balances: Dict[str, Decimal] = {}
        self._holdings: Dict[HoldingKey, object] = {}
        self._orders: List[OrderRecord] = []

    async def get_balance(self, user_id: str) -> Optional[Decimal]:
        if user_id in self._balances:
            return self._balances[user_id]
        return self._store._balances.get(user_id)

    async def debit_if_sufficient(self, user_id: str, amount: Decimal) -> bool:
        balance = await self.get_balance(user_id)
        if balance is None or balance < amount:
            return False
        self._balances[user_id] = balance - amount
        return True

    async def credit(self, user_id: str, amount: Decimal) -> None:
        balance = await self.get_balance(user_id)
        self._balances[user_id] = (balance or Decimal("0")) + amount

    async def get_holding(self, user_id: str, symbol: str) -> Optional[Holding]:
        key = (user_id, symbol)
        if key in self._holdings:
            staged = self._holdings[key]
            return None if staged is _DELETED else staged.copy()
        holding = self._store._holdings.get(key)
        return holding.copy() if holding else None

    async def save_holding(self, holding: Holding) -> None:
        self._holdings[(holding.user_id, holding.symbol)] = holding.copy()

    async def delete_holding(self, user_id: str, symbol: str) -> None:
        self._holdings[(user_id, symbol)] = _DELETED

    async def add_order(self, order: OrderRecord) -> None:
        self._orders.append(order)

    def commit(self) -> None:
        self._store._balances.update(self._balances)
        for key, staged in self._holdings.items():
            if staged is _DELETED:
                self._store._holdings.pop(key, None)
            else:
                self._store._holdings[key] = staged
        self._store._orders.extend(self._orders)


class MemoryPortfolioStore(PortfolioStore):

    def __init__(self, accounts: Iterable[Account] = ()):
        self._balances: Dict[str, Decimal] = {a.user_id: a.balance for a in accounts}
        self._holdings: Dict[HoldingKey, Holding] = {}
        self._orders: List[OrderRecord] = []

    async def get_balance(self, user_id: str) -> Optional[Decimal]:
        return self._balances.get(user_id)

    async def open_account(self, user_id: str, balance: Decimal) -> Account:
        self._balances.setdefault(user_id, balance)
        return Account(user_id=user_id, balance=self._balances[user_id])

    async def get_holding(self, user_id: str, symbol: str) -> Optional[Holding]:
        holding = self._holdings.get((user_id, symbol))
        return holding.copy() if holding else None

    async def list_holdings(self, user_id: str) -> List[Holding]:
        return [h.copy() for (uid, _), h in self._holdings.items() if uid == user_id]

    async def list_orders(self, user_id: str, limit: int = 100) -> List[OrderRecord]:
        orders = [o for o in self._orders if o.user_id == user_id]
        return orders[-limit:]

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[MemoryPortfolioTransaction]:
        tx = MemoryPortfolioTransaction(self)
        yield tx
        # Only reached when the body raised nothing
        tx.commit()
