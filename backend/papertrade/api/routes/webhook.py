"""
Webhook API
PaperTrade Platform

Inbound TradingView-style alerts. The body is handed to the strategy
engine unparsed so that malformed payloads get the engine's messages.
"""

from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from loguru import logger

from papertrade.api.deps import get_container
from papertrade.container import ServiceContainer
from papertrade.core.errors import ErrorKind
from papertrade.services.strategy_engine import SignalResult


router = APIRouter()


STATUS_BY_KIND = {
    ErrorKind.VALIDATION_ERROR: 400,
    ErrorKind.AUTHENTICATION_ERROR: 401,
    ErrorKind.STRATEGY_NOT_FOUND: 401,
    ErrorKind.DUPLICATE_SIGNAL: 409,
    ErrorKind.RISK_LIMIT_EXCEEDED: 422,
    ErrorKind.EXECUTION_ERROR: 500,
}


def status_for(result: SignalResult) -> int:
    if result.success:
        return 200
    return STATUS_BY_KIND.get(result.kind, 400)


@router.post("/tradingview")
async def tradingview_webhook(
    request: Request,
    container: ServiceContainer = Depends(get_container),
):
    """
    Receive a trading signal.

    Expected JSON:
        {"symbol": "NSE:RELIANCE", "action": "BUY", "quantity": 10,
         "price": 2500.50, "secret": "...", "timestamp": "..."}
    """
    payload: Any
    try:
        payload = await request.json()
    except ValueError:
        logger.info("Webhook body is not valid JSON")
        payload = None

    result = await container.strategy_engine.process_signal(payload)
    return JSONResponse(status_code=status_for(result), content=result.to_dict())


@router.get("/test")
async def webhook_format():
    """Describe the webhook payload."""
    return {
        "endpoint": "/api/webhook/tradingview",
        "method": "POST",
        "required_fields": {
            "symbol": "Instrument symbol, optionally exchange-qualified (NSE:RELIANCE)",
            "action": "BUY or SELL",
            "secret": "Webhook secret of the strategy",
        },
        "optional_fields": {
            "quantity": "Shares to trade (default 1)",
            "price": "Signal price, used for the capital check",
            "strategy": "Free-form strategy name",
            "timestamp": "Alert time; repeated timestamps are ignored as duplicates",
        },
        "example": {
            "symbol": "NSE:RELIANCE",
            "action": "BUY",
            "quantity": 10,
            "price": 2500.50,
            "secret": "your-webhook-secret",
            "timestamp": "{{timenow}}",
        },
    }
