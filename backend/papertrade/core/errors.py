"""
Error Taxonomy
PaperTrade Platform

Typed failures raised by the execution pipeline. Every error carries a
stable machine-readable kind so callers can branch on it without parsing
messages.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Machine-readable failure kinds."""
    VALIDATION_ERROR = "VALIDATION_ERROR"
    AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"
    STRATEGY_NOT_FOUND = "STRATEGY_NOT_FOUND"
    DUPLICATE_SIGNAL = "DUPLICATE_SIGNAL"
    INSTRUMENT_UNAVAILABLE = "INSTRUMENT_UNAVAILABLE"
    RISK_LIMIT_EXCEEDED = "RISK_LIMIT_EXCEEDED"
    PRICE_UNAVAILABLE = "PRICE_UNAVAILABLE"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    NO_HOLDING = "NO_HOLDING"
    INSUFFICIENT_SHARES = "INSUFFICIENT_SHARES"
    EXECUTION_ERROR = "EXECUTION_ERROR"


class TradingError(Exception):
    """Base class for all pipeline failures."""

    kind: ErrorKind = ErrorKind.EXECUTION_ERROR

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            **self.details,
        }


class ValidationError(TradingError):
    """Malformed signal or invalid configuration value."""
    kind = ErrorKind.VALIDATION_ERROR


class AuthenticationError(TradingError):
    """Signal could not be authenticated."""
    kind = ErrorKind.AUTHENTICATION_ERROR


class StrategyNotFound(AuthenticationError):
    """No active strategy matches the webhook secret."""
    kind = ErrorKind.STRATEGY_NOT_FOUND

    def __init__(self, message: str = "Invalid webhook secret or strategy not active"):
        super().__init__(message)


class DuplicateSignal(TradingError):
    """Signal already processed within the dedup window."""
    kind = ErrorKind.DUPLICATE_SIGNAL

    def __init__(self, key: str):
        super().__init__("Duplicate signal (already processed)", key=key)
        self.key = key


class InstrumentUnavailable(TradingError):
    kind = ErrorKind.INSTRUMENT_UNAVAILABLE

    def __init__(self, symbol: str):
        super().__init__(f"Stock {symbol} not found or inactive", symbol=symbol)
        self.symbol = symbol


class RiskLimitExceeded(TradingError):
    """Admission control rejected the trade. Carries the violated limit."""
    kind = ErrorKind.RISK_LIMIT_EXCEEDED

    def __init__(self, message: str, limit: str):
        super().__init__(message, limit=limit)
        self.limit = limit


class PriceUnavailable(TradingError):
    kind = ErrorKind.PRICE_UNAVAILABLE

    def __init__(self, symbol: str):
        super().__init__(f"Unable to fetch price for {symbol}", symbol=symbol)
        self.symbol = symbol


class InsufficientBalance(TradingError):
    kind = ErrorKind.INSUFFICIENT_BALANCE

    def __init__(self, required: Any, available: Any):
        super().__init__(
            f"Insufficient balance. Required: ₹{required:.2f}, Available: ₹{available:.2f}",
            required=str(required),
            available=str(available),
        )


class NoHolding(TradingError):
    kind = ErrorKind.NO_HOLDING

    def __init__(self, symbol: str):
        super().__init__(f"No holdings found for {symbol}", symbol=symbol)


class InsufficientShares(TradingError):
    kind = ErrorKind.INSUFFICIENT_SHARES

    def __init__(self, held: int, requested: int):
        super().__init__(
            f"Insufficient shares. You own {held}, trying to sell {requested}",
            held=held,
            requested=requested,
        )


class ExecutionError(TradingError):
    """Unexpected failure while committing an admitted trade."""
    kind = ErrorKind.EXECUTION_ERROR

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class AuditUnavailable(ExecutionError):
    """The audit sink rejected a write."""
