"""
Strategy Engine

Turns inbound webhook signals into executed paper trades.

Pipeline (each step may end processing with a typed failure):
    1. Structural validation (TradeSignal)
    2. Strategy resolution by webhook secret
    3. Idempotency check on (strategy id, signal timestamp)
    4. Audit SIGNAL_RECEIVED
    5. Instrument resolution
    6. Risk admission
    7. Execution
    8. Post-commit bookkeeping (risk counters, dedup key, statistics, audit)

Steps 3 to 8 run under the strategy's lock, so two signals for the same
strategy never interleave between the risk check and the counter update.
Steps 7 and 8 run as one shielded task: a caller that times out still
leaves the counters, dedup key and statistics matching the ledger.
Expected failures are returned as SignalResult(success=False), never raised.

Usage:
    engine = StrategyEngine(...)
    result = await engine.process_signal(request_json)
    if not result.success:
        print(result.kind, result.reason)
"""

import asyncio
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Set

from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from papertrade.core.clock import Clock, SystemClock
from papertrade.core.errors import (
    AuditUnavailable,
    DuplicateSignal,
    ErrorKind,
    ExecutionError,
    InstrumentUnavailable,
    InsufficientBalance,
    InsufficientShares,
    NoHolding,
    PriceUnavailable,
    RiskLimitExceeded,
    StrategyNotFound,
    TradingError,
    ValidationError,
)
from papertrade.execution.order_executor import ExecutionResult, OrderExecutor
from papertrade.schemas.signal import TradeSignal, validation_message
from papertrade.services.audit_trail import AuditEventType, AuditStatus, AuditTrail
from papertrade.services.error_handler import ErrorCategory, ErrorHandler, ErrorSeverity
from papertrade.services.price_cache import PriceCache
from papertrade.services.risk_manager import RiskManager
from papertrade.services.signal_cache import SignalCache
from papertrade.stores.base import InstrumentStore, OrderRecord, Strategy, StrategyStore


EXECUTION_FAILURES = (PriceUnavailable, InsufficientBalance, NoHolding, InsufficientShares)


def map_symbol(symbol: str) -> str:
    """Strip an exchange qualifier: "NSE:RELIANCE" -> "RELIANCE"."""
    return symbol.split(":")[-1].strip().upper()


@dataclass
class SignalResult:
    """Outcome of one processed signal."""
    success: bool
    kind: Optional[ErrorKind] = None
    reason: Optional[str] = None
    strategy_id: Optional[str] = None
    symbol: Optional[str] = None
    order: Optional[OrderRecord] = None
    execution_price: Optional[Decimal] = None
    slippage: Optional[Decimal] = None
    profit_loss: Optional[Decimal] = None
    execution_time_ms: int = 0
    risk_checks: List[str] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        def num(value: Optional[Decimal]) -> Optional[str]:
            return str(value) if value is not None else None

        if not self.success:
            return {
                "success": False,
                "error": self.kind.value if self.kind else None,
                "message": self.reason,
                "strategy_id": self.strategy_id,
                "risk_checks": self.risk_checks,
                "details": self.details,
                "execution_time_ms": self.execution_time_ms,
            }
        return {
            "success": True,
            "message": self.reason,
            "strategy_id": self.strategy_id,
            "symbol": self.symbol,
            "order": self.order.to_dict() if self.order else None,
            "execution_price": num(self.execution_price),
            "slippage": num(self.slippage),
            "profit_loss": num(self.profit_loss),
            "execution_time_ms": self.execution_time_ms,
            "risk_checks": self.risk_checks,
        }


class StrategyEngine:
    """
    Orchestrates validation, admission and execution of webhook signals.
    """

    def __init__(
        self,
        strategy_store: StrategyStore,
        instrument_store: InstrumentStore,
        price_cache: PriceCache,
        risk_manager: RiskManager,
        order_executor: OrderExecutor,
        audit_trail: AuditTrail,
        signal_cache: SignalCache,
        error_handler: Optional[ErrorHandler] = None,
        clock: Optional[Clock] = None,
        metrics_log_limit: int = 100,
    ):
        self.strategy_store = strategy_store
        self.instrument_store = instrument_store
        self.price_cache = price_cache
        self.risk_manager = risk_manager
        self.order_executor = order_executor
        self.audit_trail = audit_trail
        self.signal_cache = signal_cache
        self.error_handler = error_handler or ErrorHandler()
        self.clock = clock or SystemClock()
        self.metrics_log_limit = metrics_log_limit
        self._inflight: Set[asyncio.Task] = set()

        self._stats = {
            "signals_received": 0,
            "executed": 0,
            "rejected": 0,
            "duplicates": 0,
            "errors": 0,
        }

    # =========================================================================
    # Pipeline
    # =========================================================================

    async def process_signal(self, payload: Mapping[str, Any]) -> SignalResult:
        """
        Process one inbound signal end to end.

        Args:
            payload: Raw webhook JSON

        Returns:
            SignalResult; failures carry an ErrorKind and a human-readable reason
        """
        started = self.clock.monotonic()
        self._stats["signals_received"] += 1

        try:
            signal = TradeSignal.model_validate(payload)
        except PydanticValidationError as e:
            self._stats["rejected"] += 1
            error = ValidationError(validation_message(e))
            logger.info(f"Rejected malformed signal: {error.message}")
            return self._failure(error, started)

        resolved = await self.strategy_store.get_active_by_secret(signal.secret)
        if resolved is None:
            self._stats["rejected"] += 1
            logger.warning(f"Signal for {signal.symbol} with unknown or inactive webhook secret")
            return self._failure(StrategyNotFound(), started)

        async with self.risk_manager.lock(resolved.id):
            # Re-read under the lock so statistics build on the latest save
            strategy = await self.strategy_store.get(resolved.id)
            if strategy is None:
                self._stats["rejected"] += 1
                return self._failure(StrategyNotFound(), started)
            return await self._process_locked(signal, strategy, started)

    async def _process_locked(
        self,
        signal: TradeSignal,
        strategy: Strategy,
        started: float,
    ) -> SignalResult:
        dedup_key = f"{strategy.id}_{signal.timestamp}"
        if await self.signal_cache.seen(dedup_key):
            self._stats["duplicates"] += 1
            logger.debug(f"Duplicate signal ignored: {dedup_key}")
            return self._failure(DuplicateSignal(dedup_key), started, strategy)

        symbol = map_symbol(signal.symbol)
        audit_context = {
            "strategy_id": strategy.id,
            "user_id": strategy.user_id,
            "symbol": symbol,
            "action": signal.action,
            "quantity": signal.quantity,
            "signal_data": signal.to_audit_payload(),
        }

        try:
            return await self._admit_and_execute(signal, strategy, symbol, dedup_key, audit_context, started)
        except AuditUnavailable as e:
            self._stats["errors"] += 1
            return self._failure(e, started, strategy)

    async def _admit_and_execute(
        self,
        signal: TradeSignal,
        strategy: Strategy,
        symbol: str,
        dedup_key: str,
        audit_context: Dict[str, Any],
        started: float,
    ) -> SignalResult:
        await self._audit(AuditEventType.SIGNAL_RECEIVED, AuditStatus.SUCCESS, audit_context)

        # Instrument
        instrument = await self.instrument_store.get(symbol)
        if instrument is None or not instrument.is_active or not await self.price_cache.ensure_tracked(symbol):
            error = InstrumentUnavailable(symbol)
            self._stats["rejected"] += 1
            logger.info(f"Signal rejected for {strategy.name}: {error.message}")
            await self._audit(
                AuditEventType.ORDER_REJECTED,
                AuditStatus.REJECTED,
                audit_context,
                reason=error.message,
            )
            return self._failure(error, started, strategy)

        # Risk admission
        reference_price = signal.price or instrument.reference_price or self.price_cache.get_ltp(symbol)
        trade_amount = reference_price * signal.quantity
        decision = self.risk_manager.validate(strategy, trade_amount)
        if not decision.allowed:
            error = RiskLimitExceeded(decision.reason, decision.limit)
            self._stats["rejected"] += 1
            logger.info(f"Risk check failed for {strategy.name}: {decision.reason}")
            await self._audit(
                AuditEventType.ORDER_REJECTED,
                AuditStatus.REJECTED,
                audit_context,
                reason=decision.reason,
                metadata={"limit": decision.limit, "checks": list(decision.checks)},
            )
            return self._failure(error, started, strategy, risk_checks=list(decision.checks))

        # Execution and bookkeeping complete together even if the caller is cancelled
        unit = asyncio.create_task(
            self._execute_and_record(signal, strategy, symbol, dedup_key, audit_context, decision.checks, started)
        )
        self._inflight.add(unit)
        unit.add_done_callback(self._inflight.discard)
        try:
            return await asyncio.shield(unit)
        except asyncio.CancelledError:
            logger.warning(f"Signal {dedup_key} cancelled by caller, finishing its trade before unlocking")
            await asyncio.wait({unit})
            raise

    async def _execute_and_record(
        self,
        signal: TradeSignal,
        strategy: Strategy,
        symbol: str,
        dedup_key: str,
        audit_context: Dict[str, Any],
        checks: tuple,
        started: float,
    ) -> SignalResult:
        try:
            result = await self.order_executor.execute(
                strategy.user_id,
                signal.action,
                symbol,
                signal.quantity,
                strategy.id,
            )
        except EXECUTION_FAILURES as e:
            self._stats["errors"] += 1
            try:
                await self._audit(
                    AuditEventType.ERROR,
                    AuditStatus.FAILED,
                    audit_context,
                    reason=e.message,
                    error_message=e.message,
                )
            except AuditUnavailable as audit_error:
                return self._failure(audit_error, started, strategy, risk_checks=list(checks))
            return self._failure(e, started, strategy, risk_checks=list(checks))
        except Exception as e:
            return await self._execution_error(e, strategy, audit_context, started, "Execution failed")

        try:
            return await self._record_success(result, strategy, dedup_key, audit_context, checks, started)
        except Exception as e:
            return await self._execution_error(e, strategy, audit_context, started, "Post-trade bookkeeping failed")

    async def _record_success(
        self,
        result: ExecutionResult,
        strategy: Strategy,
        dedup_key: str,
        audit_context: Dict[str, Any],
        checks: tuple,
        started: float,
    ) -> SignalResult:
        pnl = result.profit_loss
        now = self.clock.now()

        self.risk_manager.record(strategy.id, pnl, now)
        await self.signal_cache.add(dedup_key)

        strategy.record_execution(pnl, now)
        await self.strategy_store.save(strategy)

        elapsed_ms = int((self.clock.monotonic() - started) * 1000)
        profit_loss = result.pnl.net_pnl if result.pnl else None
        await self._audit(
            AuditEventType.ORDER_EXECUTED,
            AuditStatus.SUCCESS,
            audit_context,
            order_id=result.order.order_id,
            execution_price=result.execution_price,
            slippage=result.slippage,
            profit_loss=profit_loss,
            execution_time_ms=elapsed_ms,
            metadata={
                "market_price": str(result.market_price),
                "charges": result.charges.to_dict(),
                "checks": list(checks),
            },
        )

        self._stats["executed"] += 1
        return SignalResult(
            success=True,
            reason=f"{result.order.side.value} {result.order.quantity} {result.order.symbol} executed",
            strategy_id=strategy.id,
            symbol=result.order.symbol,
            order=result.order,
            execution_price=result.execution_price,
            slippage=result.slippage,
            profit_loss=profit_loss,
            execution_time_ms=elapsed_ms,
            risk_checks=list(checks),
        )

    async def _execution_error(
        self,
        exc: Exception,
        strategy: Strategy,
        audit_context: Dict[str, Any],
        started: float,
        message: str,
    ) -> SignalResult:
        """Unexpected failure after admission: alert the operator."""
        self._stats["errors"] += 1
        error = ExecutionError(f"{message}: {exc}", cause=exc)
        await self.error_handler.handle_error(
            exc,
            category=ErrorCategory.EXECUTION,
            severity=ErrorSeverity.CRITICAL,
            context={"strategy_id": strategy.id, "symbol": audit_context["symbol"]},
        )
        try:
            await self._audit(
                AuditEventType.ERROR,
                AuditStatus.FAILED,
                audit_context,
                reason=message,
                error_message=str(exc),
            )
        except AuditUnavailable:
            logger.error(f"ERROR event for {strategy.id} missing from the audit trail: {message}: {exc}")
        return self._failure(error, started, strategy)

    async def _audit(
        self,
        event_type: AuditEventType,
        status: AuditStatus,
        audit_context: Dict[str, Any],
        **fields: Any,
    ) -> None:
        """Write one audit event. A failing sink is reported and raised as AuditUnavailable."""
        try:
            await self.audit_trail.log_event(event_type, status, **fields, **audit_context)
        except Exception as e:
            await self.error_handler.handle_error(
                e,
                category=ErrorCategory.PERSISTENCE,
                context={
                    "strategy_id": audit_context["strategy_id"],
                    "symbol": audit_context["symbol"],
                    "event_type": event_type.value,
                },
            )
            raise AuditUnavailable(f"Audit trail unavailable: {e}", cause=e) from e

    def _failure(
        self,
        error: TradingError,
        started: float,
        strategy: Optional[Strategy] = None,
        risk_checks: Optional[List[str]] = None,
    ) -> SignalResult:
        return SignalResult(
            success=False,
            kind=error.kind,
            reason=error.message,
            strategy_id=strategy.id if strategy else None,
            execution_time_ms=int((self.clock.monotonic() - started) * 1000),
            risk_checks=risk_checks or [],
            details=error.details,
        )

    # =========================================================================
    # Monitoring
    # =========================================================================

    async def get_strategy_metrics(self, strategy_id: str) -> Optional[Dict[str, Any]]:
        """Outcome counts over the strategy's recent audit events."""
        strategy = await self.strategy_store.get(strategy_id)
        if strategy is None:
            return None

        events = await self.audit_trail.query_events(
            strategy_id=strategy_id,
            limit=self.metrics_log_limit,
        )
        executed = sum(1 for e in events if e.event_type == AuditEventType.ORDER_EXECUTED)
        rejected = sum(1 for e in events if e.event_type == AuditEventType.ORDER_REJECTED)
        errors = sum(1 for e in events if e.event_type == AuditEventType.ERROR)
        attempts = executed + rejected + errors

        return {
            "strategy": strategy.to_dict(),
            "recent_events": len(events),
            "executed": executed,
            "rejected": rejected,
            "errors": errors,
            "success_rate": round(executed / attempts * 100, 2) if attempts else 0.0,
            "risk": self.risk_manager.get_risk_stats(strategy_id),
        }

    async def clear_signal_cache(self) -> int:
        count = await self.signal_cache.clear()
        logger.warning(f"Signal dedup cache cleared ({count} keys)")
        return count

    def get_stats(self) -> Dict[str, Any]:
        return dict(self._stats)
