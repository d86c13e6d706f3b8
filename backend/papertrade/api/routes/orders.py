"""Manual order endpoints - same executor and ledger as webhook signals"""
from fastapi import APIRouter, Depends, HTTPException, Query
from loguru import logger

from papertrade.api.deps import get_container
from papertrade.container import ServiceContainer
from papertrade.core.errors import TradingError
from papertrade.schemas.signal import ManualOrderRequest
from papertrade.stores.base import OrderSide

router = APIRouter()


async def _place(container: ServiceContainer, side: OrderSide, order: ManualOrderRequest):
    await container.ensure_account(order.user_id)
    try:
        result = await container.order_executor.execute(
            order.user_id,
            side.value,
            order.symbol,
            order.quantity,
        )
    except TradingError as e:
        raise HTTPException(status_code=400, detail=e.to_dict())
    return {"success": True, **result.to_dict()}


@router.post("/buy")
async def buy(
    order: ManualOrderRequest,
    container: ServiceContainer = Depends(get_container),
):
    """Buy at the cached price plus slippage."""
    return await _place(container, OrderSide.BUY, order)


@router.post("/sell")
async def sell(
    order: ManualOrderRequest,
    container: ServiceContainer = Depends(get_container),
):
    """Sell from an existing holding."""
    return await _place(container, OrderSide.SELL, order)


@router.get("/portfolio/{user_id}")
async def get_portfolio(
    user_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    container: ServiceContainer = Depends(get_container),
):
    """Balance, open holdings and recent orders of a user."""
    store = container.portfolio_store
    balance = await store.get_balance(user_id)
    if balance is None:
        logger.debug(f"Portfolio requested for unknown user {user_id}")
        raise HTTPException(status_code=404, detail=f"No account for {user_id}")

    holdings = await store.list_holdings(user_id)
    orders = await store.list_orders(user_id, limit=limit)
    return {
        "user_id": user_id,
        "balance": str(balance),
        "holdings": [h.to_dict() for h in holdings],
        "orders": [o.to_dict() for o in orders],
    }
