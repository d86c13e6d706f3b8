"""
Audit Trail
PaperTrade Platform

Append-only record of every signal outcome:
- Signals received
- Orders executed (fill price, slippage, latency, P&L)
- Orders rejected (reason, violated limit)
- Risk events (emergency stop)
- Execution errors

Events are written to a pluggable AuditStorage and mirrored to loguru as
one-line summaries. Storage failures are logged and re-raised; an audit
write is never silently dropped.
"""

import gzip
import json
import re
import shutil
import uuid
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional, Tuple

from loguru import logger

from papertrade.core.clock import Clock, SystemClock


class AuditEventType(str, Enum):
    """Types of audit events."""
    SIGNAL_RECEIVED = "SIGNAL_RECEIVED"
    ORDER_EXECUTED = "ORDER_EXECUTED"
    ORDER_REJECTED = "ORDER_REJECTED"
    RISK_LIMIT_HIT = "RISK_LIMIT_HIT"
    ERROR = "ERROR"


class AuditStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    REJECTED = "REJECTED"


def _decimal_or_none(value: Any) -> Optional[Decimal]:
    return Decimal(str(value)) if value is not None else None


@dataclass
class AuditEvent:
    """
    One auditable outcome.

    Immutable once stored; storages only ever append.
    """
    event_id: str
    event_type: AuditEventType
    status: AuditStatus
    timestamp: datetime

    # Actor
    strategy_id: Optional[str] = None
    user_id: Optional[str] = None

    # Signal
    symbol: Optional[str] = None
    action: Optional[str] = None
    quantity: Optional[int] = None
    signal_data: Dict[str, Any] = field(default_factory=dict)

    # Outcome
    reason: Optional[str] = None
    error_message: Optional[str] = None
    order_id: Optional[str] = None
    execution_price: Optional[Decimal] = None
    slippage: Optional[Decimal] = None
    profit_loss: Optional[Decimal] = None
    execution_time_ms: Optional[int] = None

    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage."""
        def num(value: Optional[Decimal]) -> Optional[str]:
            return str(value) if value is not None else None

        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
            "strategy_id": self.strategy_id,
            "user_id": self.user_id,
            "symbol": self.symbol,
            "action": self.action,
            "quantity": self.quantity,
            "signal_data": self.signal_data,
            "reason": self.reason,
            "error_message": self.error_message,
            "order_id": self.order_id,
            "execution_price": num(self.execution_price),
            "slippage": num(self.slippage),
            "profit_loss": num(self.profit_loss),
            "execution_time_ms": self.execution_time_ms,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEvent":
        return cls(
            event_id=data["event_id"],
            event_type=AuditEventType(data["event_type"]),
            status=AuditStatus(data["status"]),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            strategy_id=data.get("strategy_id"),
            user_id=data.get("user_id"),
            symbol=data.get("symbol"),
            action=data.get("action"),
            quantity=data.get("quantity"),
            signal_data=data.get("signal_data") or {},
            reason=data.get("reason"),
            error_message=data.get("error_message"),
            order_id=data.get("order_id"),
            execution_price=_decimal_or_none(data.get("execution_price")),
            slippage=_decimal_or_none(data.get("slippage")),
            profit_loss=_decimal_or_none(data.get("profit_loss")),
            execution_time_ms=data.get("execution_time_ms"),
            metadata=data.get("metadata") or {},
        )

    def to_log_line(self) -> str:
        """Convert to log line format."""
        parts = [
            self.timestamp.strftime("%Y-%m-%d %H:%M:%S.%f")[:-3],
            f"[{self.event_type.value}]",
            self.status.value,
        ]

        if self.strategy_id:
            parts.append(f"strategy={self.strategy_id[:8]}")
        if self.symbol:
            parts.append(f"symbol={self.symbol}")
        if self.action:
            parts.append(f"action={self.action}")
        if self.quantity:
            parts.append(f"qty={self.quantity}")
        if self.execution_price is not None:
            parts.append(f"price={self.execution_price}")
        if self.profit_loss is not None:
            parts.append(f"pnl={self.profit_loss:+.2f}")
        if self.reason:
            parts.append(f"| {self.reason}")
        elif self.error_message:
            parts.append(f"| {self.error_message}")

        return " ".join(parts)


def matches_filter(
    event: AuditEvent,
    event_types: Optional[List[AuditEventType]] = None,
    strategy_id: Optional[str] = None,
    symbol: Optional[str] = None,
    start_time: Optional[datetime] = None,
    end_time: Optional[datetime] = None,
) -> bool:
    """Check if event matches filter criteria."""
    if event_types and event.event_type not in event_types:
        return False
    if strategy_id and event.strategy_id != strategy_id:
        return False
    if symbol and event.symbol != symbol:
        return False
    if start_time and event.timestamp < start_time:
        return False
    if end_time and event.timestamp > end_time:
        return False
    return True


class AuditStorage:
    """
    Base class for audit event storage.

    Supports multiple storage backends.
    """

    async def store(self, event: AuditEvent) -> None:
        """Append an audit event."""
        raise NotImplementedError

    async def query(
        self,
        event_types: Optional[List[AuditEventType]] = None,
        strategy_id: Optional[str] = None,
        symbol: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        """Most recent matching events, oldest first."""
        raise NotImplementedError

    async def close(self) -> None:
        """Close storage connection."""
        pass


class MemoryAuditStorage(AuditStorage):
    """Process-local list of events."""

    def __init__(self):
        self.events: List[AuditEvent] = []

    async def store(self, event: AuditEvent) -> None:
        self.events.append(event)

    async def query(
        self,
        event_types: Optional[List[AuditEventType]] = None,
        strategy_id: Optional[str] = None,
        symbol: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        matched = [
            e for e in self.events
            if matches_filter(e, event_types, strategy_id, symbol, start_time, end_time)
        ]
        return matched[-limit:] if limit else matched



class FileAuditStorage(AuditStorage):
    """
    One JSONL file per trading day under base_dir.

    When an event for a new day arrives, the previous day's file is
    gzip-archived and files past the retention period are deleted.
    Queries read archived and live files alike, in date order.
    """

    FILE_PATTERN = re.compile(r"^audit_(\d{8})\.jsonl(\.gz)?$")

    def __init__(
        self,
        base_dir: str = "logs/audit",
        compress_old: bool = True,
        retention_days: int = 90,
        buffer_size: int = 1,
    ):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.compress_old = compress_old
        self.retention_days = retention_days

        self._day: Optional[date] = None
        self._pending: List[str] = []
        self._buffer_size = max(1, buffer_size)

        logger.info(f"Audit files under {self.base_dir} (retention {retention_days}d)")

    def path_for(self, day: date) -> Path:
        return self.base_dir / f"audit_{day:%Y%m%d}.jsonl"

    def _audit_files(self) -> List[Tuple[date, Path]]:
        found = []
        for path in self.base_dir.iterdir():
            match = self.FILE_PATTERN.match(path.name)
            if match:
                found.append((datetime.strptime(match.group(1), "%Y%m%d").date(), path))
        return sorted(found)

    async def store(self, event: AuditEvent) -> None:
        day = event.timestamp.date()
        if day != self._day:
            await self._start_day(day)

        self._pending.append(json.dumps(event.to_dict()))
        if len(self._pending) >= self._buffer_size:
            await self._flush()

    async def _start_day(self, day: date) -> None:
        await self._flush()
        previous, self._day = self._day, day

        if previous is not None and self.compress_old:
            self._archive(self.path_for(previous))
        self._apply_retention(day)

    async def _flush(self) -> None:
        if not self._pending or self._day is None:
            return
        with open(self.path_for(self._day), "a", encoding="utf-8") as f:
            f.write("\n".join(self._pending) + "\n")
        self._pending = []

    def _archive(self, path: Path) -> None:
        if not path.exists():
            return
        try:
            with open(path, "rb") as src, gzip.open(f"{path}.gz", "wb") as dst:
                shutil.copyfileobj(src, dst)
        except OSError as e:
            # the plain file is kept, so nothing is lost
            logger.warning(f"Could not archive {path.name}: {e}")
            return
        path.unlink()
        logger.debug(f"Archived {path.name}")

    def _apply_retention(self, today: date) -> None:
        cutoff = today - timedelta(days=self.retention_days)
        for day, path in self._audit_files():
            if day < cutoff:
                path.unlink()
                logger.debug(f"Deleted expired audit file {path.name}")

    @staticmethod
    def _read(path: Path) -> List[str]:
        opener = gzip.open if path.suffix == ".gz" else open
        with opener(path, "rt", encoding="utf-8") as f:
            return f.read().splitlines()

    async def query(
        self,
        event_types: Optional[List[AuditEventType]] = None,
        strategy_id: Optional[str] = None,
        symbol: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        await self._flush()

        matched: List[AuditEvent] = []
        for _, path in self._audit_files():
            for line in self._read(path):
                if not line.strip():
                    continue
                try:
                    event = AuditEvent.from_dict(json.loads(line))
                except (json.JSONDecodeError, KeyError, ValueError) as e:
                    logger.warning(f"Skipping malformed audit line in {path.name}: {e}")
                    continue
                if matches_filter(event, event_types, strategy_id, symbol, start_time, end_time):
                    matched.append(event)

        return matched[-limit:] if limit else matched

    async def close(self) -> None:
        await self._flush()


class AuditTrail:
    """
    Records pipeline outcomes to storage and mirrors them to the log.

    Usage:
        audit = AuditTrail(storage=MemoryAuditStorage())
        await audit.log_event(
            AuditEventType.SIGNAL_RECEIVED,
            AuditStatus.SUCCESS,
            strategy_id=strategy.id,
            signal_data=payload,
        )
    """

    def __init__(
        self,
        storage: Optional[AuditStorage] = None,
        clock: Optional[Clock] = None,
        max_recent: int = 500,
    ):
        self.storage = storage or MemoryAuditStorage()
        self.clock = clock or SystemClock()
        self._recent: Deque[AuditEvent] = deque(maxlen=max_recent)

    async def log_event(
        self,
        event_type: AuditEventType,
        status: AuditStatus,
        strategy_id: Optional[str] = None,
        user_id: Optional[str] = None,
        symbol: Optional[str] = None,
        action: Optional[str] = None,
        quantity: Optional[int] = None,
        signal_data: Optional[Dict[str, Any]] = None,
        reason: Optional[str] = None,
        error_message: Optional[str] = None,
        order_id: Optional[str] = None,
        execution_price: Optional[Decimal] = None,
        slippage: Optional[Decimal] = None,
        profit_loss: Optional[Decimal] = None,
        execution_time_ms: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditEvent:
        """
        Append an event stamped with the current clock time.

        Args:
            event_type: Pipeline stage the event describes
            status: SUCCESS, FAILED or REJECTED
            strategy_id: Strategy the signal resolved to
            signal_data: Inbound payload (secret removed)
            reason: Human-readable rejection reason
            error_message: Failure detail
            metadata: Violated limit, passed risk checks and similar

        Raises:
            Whatever the storage raised; the failure is logged first.
        """
        event = AuditEvent(
            event_id=uuid.uuid4().hex,
            event_type=event_type,
            status=status,
            timestamp=self.clock.now(),
            strategy_id=strategy_id,
            user_id=user_id,
            symbol=symbol,
            action=action,
            quantity=quantity,
            signal_data=signal_data or {},
            reason=reason,
            error_message=error_message,
            order_id=order_id,
            execution_price=execution_price,
            slippage=slippage,
            profit_loss=profit_loss,
            execution_time_ms=execution_time_ms,
            metadata=metadata or {},
        )

        try:
            await self.storage.store(event)
        except Exception as e:
            logger.error(f"Audit write failed for {event_type.value} ({strategy_id}): {e}")
            raise

        self._recent.append(event)
        logger.info(event.to_log_line())
        return event

    def get_recent_events(
        self,
        limit: int = 100,
        strategy_id: Optional[str] = None,
    ) -> List[AuditEvent]:
        events = [e for e in self._recent if strategy_id is None or e.strategy_id == strategy_id]
        return events[-limit:]

    async def query_events(
        self,
        event_types: Optional[List[AuditEventType]] = None,
        strategy_id: Optional[str] = None,
        symbol: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        return await self.storage.query(
            event_types=event_types,
            strategy_id=strategy_id,
            symbol=symbol,
            start_time=start_time,
            end_time=end_time,
            limit=limit,
        )

    def get_stats(self) -> Dict[str, Any]:
        return {
            "storage": type(self.storage).__name__,
            "recent_count": len(self._recent),
            "by_type": dict(Counter(e.event_type.value for e in self._recent)),
        }

    async def close(self) -> None:
        await self.storage.close()
