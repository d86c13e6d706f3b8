"""
Error Handling & Alerting
PaperTrade Platform

Operator-facing sink for failures the pipeline cannot resolve itself.
Expected outcomes (duplicates, risk rejections, insufficient balance)
are returned to the caller as SignalResult failures and never land here.

Each failure becomes an ErrorRecord classified by where it came from
(execution, persistence, dedup cache, market data). Records are kept in
a bounded history and fanned out to registered alert callbacks. A burst
of failures in one category within a short window is flagged once.
"""

import traceback
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Coroutine, Deque, Dict, List, Optional

from loguru import logger
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from papertrade.core.clock import Clock, SystemClock
from papertrade.core.errors import (
    ExecutionError,
    PriceUnavailable,
    TradingError,
    ValidationError,
)


class ErrorSeverity(str, Enum):
    """How urgently an operator should look."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"  # ledger may disagree with the audit trail


class ErrorCategory(str, Enum):
    """Subsystem a failure originated in."""
    EXECUTION = "execution"
    PERSISTENCE = "persistence"
    SIGNAL_CACHE = "signal_cache"
    MARKET_DATA = "market_data"
    VALIDATION = "validation"
    REALTIME = "realtime"
    UNKNOWN = "unknown"


DEFAULT_SEVERITY: Dict[ErrorCategory, ErrorSeverity] = {
    ErrorCategory.EXECUTION: ErrorSeverity.HIGH,
    ErrorCategory.PERSISTENCE: ErrorSeverity.HIGH,
    ErrorCategory.SIGNAL_CACHE: ErrorSeverity.MEDIUM,
    ErrorCategory.MARKET_DATA: ErrorSeverity.MEDIUM,
    ErrorCategory.REALTIME: ErrorSeverity.LOW,
    ErrorCategory.VALIDATION: ErrorSeverity.LOW,
    ErrorCategory.UNKNOWN: ErrorSeverity.MEDIUM,
}

ErrorCallback = Callable[["ErrorRecord"], Coroutine[Any, Any, None]]


@dataclass
class ErrorRecord:
    """One handled failure."""
    record_id: str
    category: ErrorCategory
    severity: ErrorSeverity
    message: str
    exception_type: str
    stack_trace: str
    timestamp: datetime
    kind: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "category": self.category.value,
            "severity": self.severity.value,
            "kind": self.kind,
            "message": self.message,
            "exception_type": self.exception_type,
            "timestamp": self.timestamp.isoformat(),
            "context": self.context,
            "stack_trace": self.stack_trace,
        }


def classify(exception: BaseException) -> ErrorCategory:
    """Map an exception to the subsystem it came from."""
    if isinstance(exception, ExecutionError):
        return ErrorCategory.EXECUTION
    if isinstance(exception, PriceUnavailable):
        return ErrorCategory.MARKET_DATA
    if isinstance(exception, (ValidationError, ValueError)):
        return ErrorCategory.VALIDATION
    if isinstance(exception, TradingError):
        return ErrorCategory.EXECUTION
    if isinstance(exception, SQLAlchemyError):
        return ErrorCategory.PERSISTENCE
    if isinstance(exception, RedisError):
        return ErrorCategory.SIGNAL_CACHE
    if isinstance(exception, OSError):
        # covers ConnectionError and file sink failures
        return ErrorCategory.PERSISTENCE
    return ErrorCategory.UNKNOWN


class ErrorHandler:
    """
    Records failures and notifies alert callbacks.

    Usage:
        handler = ErrorHandler()
        handler.register_error_callback(page_operator)
        await handler.handle_error(
            exc,
            category=ErrorCategory.EXECUTION,
            severity=ErrorSeverity.CRITICAL,
            context={"strategy_id": strategy.id},
        )
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        max_errors: int = 1000,
        burst_window_seconds: int = 60,
        burst_threshold: int = 10,
    ):
        self.clock = clock or SystemClock()

        self._history: Deque[ErrorRecord] = deque(maxlen=max_errors)
        self._totals: Dict[ErrorCategory, int] = {c: 0 for c in ErrorCategory}
        self._by_severity: Dict[ErrorSeverity, int] = {s: 0 for s in ErrorSeverity}

        self._burst_window = timedelta(seconds=burst_window_seconds)
        self._burst_threshold = burst_threshold
        self._recent: Dict[ErrorCategory, Deque[datetime]] = {c: deque() for c in ErrorCategory}
        self._bursting: Dict[ErrorCategory, bool] = {c: False for c in ErrorCategory}

        self._callbacks: List[ErrorCallback] = []

    def register_error_callback(self, callback: ErrorCallback) -> None:
        self._callbacks.append(callback)

    async def handle_error(
        self,
        exception: BaseException,
        category: Optional[ErrorCategory] = None,
        severity: Optional[ErrorSeverity] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> ErrorRecord:
        """
        Record, log and alert on a failure.

        Args:
            exception: The failure being reported
            category: Originating subsystem; classified from the exception when omitted
            severity: Defaults to the category's usual severity
            context: Identifiers that help locate the affected trade

        Returns:
            The stored ErrorRecord
        """
        category = category or classify(exception)
        severity = severity or DEFAULT_SEVERITY[category]

        record = ErrorRecord(
            record_id=uuid.uuid4().hex,
            category=category,
            severity=severity,
            message=str(exception),
            exception_type=type(exception).__name__,
            stack_trace="".join(traceback.format_exception(
                type(exception), exception, exception.__traceback__,
            )),
            timestamp=self.clock.now(),
            kind=exception.kind.value if isinstance(exception, TradingError) else None,
            context=dict(context or {}),
        )

        self._history.append(record)
        self._totals[category] += 1
        self._by_severity[severity] += 1
        self._track_burst(category, record.timestamp)

        level = "CRITICAL" if severity == ErrorSeverity.CRITICAL else (
            "WARNING" if severity == ErrorSeverity.LOW else "ERROR"
        )
        logger.log(level, f"[{category.value}] {record.exception_type}: {record.message} {record.context}")

        for callback in self._callbacks:
            try:
                await callback(record)
            except Exception as e:
                logger.warning(f"Alert callback {getattr(callback, '__name__', callback)!r} failed: {e}")

        return record

    def _track_burst(self, category: ErrorCategory, now: datetime) -> None:
        window = self._recent[category]
        window.append(now)
        while window and now - window[0] > self._burst_window:
            window.popleft()

        bursting = len(window) >= self._burst_threshold
        if bursting and not self._bursting[category]:
            logger.warning(
                f"{len(window)} {category.value} errors within "
                f"{int(self._burst_window.total_seconds())}s"
            )
        self._bursting[category] = bursting

    def get_error_stats(self) -> Dict[str, Any]:
        return {
            "total_errors": sum(self._totals.values()),
            "by_category": {c.value: n for c, n in self._totals.items()},
            "by_severity": {s.value: n for s, n in self._by_severity.items()},
            "bursting": [c.value for c, flag in self._bursting.items() if flag],
            "recent_errors": [r.to_dict() for r in list(self._history)[-10:]],
        }

    def get_errors(
        self,
        category: Optional[ErrorCategory] = None,
        severity: Optional[ErrorSeverity] = None,
        limit: int = 100,
    ) -> List[ErrorRecord]:
        """Most recent records, oldest first, optionally filtered."""
        records = [
            r for r in self._history
            if (category is None or r.category == category)
            and (severity is None or r.severity == severity)
        ]
        return records[-limit:]
