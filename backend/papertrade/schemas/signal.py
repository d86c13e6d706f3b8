"""
Pydantic Schemas - Signals & Orders
PaperTrade Platform

API schemas for:
- Inbound webhook signals
- Manual orders
- Executor configuration
- WebSocket client messages
"""

from collections.abc import Mapping
from decimal import Decimal, InvalidOperation
from typing import Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic_core import PydanticCustomError


# =============================================================================
# Base Schemas
# =============================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""
    model_config = ConfigDict(from_attributes=True)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _signal_error(message: str) -> PydanticCustomError:
    return PydanticCustomError("invalid_signal", message)


def _valid_quantity(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    try:
        number = Decimal(str(value))
    except InvalidOperation:
        return False
    return number == number.to_integral_value() and number >= 1


def _valid_price(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    try:
        return Decimal(str(value)) > 0
    except InvalidOperation:
        return False


# =============================================================================
# Webhook Signal
# =============================================================================

class TradeSignal(BaseSchema):
    """
    Alert payload posted by TradingView (or any compatible sender).

    Example:
        {
            "symbol": "NSE:RELIANCE",
            "action": "BUY",
            "quantity": 10,
            "price": 2500.50,
            "secret": "<webhook secret>",
            "strategy": "RSI crossover",
            "timestamp": "2024-01-15T10:30:00Z"
        }
    """
    model_config = ConfigDict(extra="ignore")

    symbol: str
    action: Literal["BUY", "SELL"]
    quantity: int = 1
    price: Optional[Decimal] = None
    secret: str
    strategy: Optional[str] = None
    timestamp: Optional[Union[str, int, float]] = None

    @model_validator(mode="before")
    @classmethod
    def check_required_fields(cls, data: Any) -> Any:
        """Report the first problem with a human-readable message."""
        if not isinstance(data, Mapping):
            raise _signal_error("Signal payload must be a JSON object")

        if _is_blank(data.get("symbol")) or not isinstance(data.get("symbol"), str):
            raise _signal_error("Missing symbol")

        if data.get("action") not in ("BUY", "SELL"):
            raise _signal_error("Invalid or missing action (must be BUY or SELL)")

        if _is_blank(data.get("secret")) or not isinstance(data.get("secret"), str):
            raise _signal_error("Missing webhook secret")

        if data.get("quantity") is not None and not _valid_quantity(data["quantity"]):
            raise _signal_error("Quantity must be at least 1")

        if data.get("price") is not None and not _valid_price(data["price"]):
            raise _signal_error("Price must be greater than 0")

        return data

    def to_audit_payload(self) -> dict:
        """Signal fields as stored in the audit trail (secret removed)."""
        return self.model_dump(mode="json", exclude={"secret"})


def validation_message(exc: ValidationError) -> str:
    """First human-readable message of a pydantic ValidationError."""
    errors = exc.errors()
    if not errors:
        return "Invalid signal"
    return errors[0]["msg"]


# =============================================================================
# Manual Orders
# =============================================================================

class ManualOrderRequest(BaseSchema):
    """Buy or sell placed directly by a user."""
    user_id: str = Field(..., min_length=1)
    symbol: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=1)


# =============================================================================
# Executor Configuration
# =============================================================================

class ExecutorConfigUpdate(BaseSchema):
    """Partial update of the order executor settings."""
    mode: Optional[str] = None
    slippage_percent: Optional[Decimal] = None
    execution_delay_ms: Optional[int] = None


# =============================================================================
# WebSocket
# =============================================================================

class ClientMessage(BaseSchema):
    """Message sent by a realtime price client."""
    action: Literal["subscribe", "unsubscribe", "ping"]
    symbols: List[str] = Field(default_factory=list)
