"""Strategy monitoring endpoints"""
from fastapi import APIRouter, Depends, HTTPException
from loguru import logger

from papertrade.api.deps import get_container
from papertrade.container import ServiceContainer
from papertrade.stores.base import Strategy

router = APIRouter()


async def _get_strategy(container: ServiceContainer, strategy_id: str) -> Strategy:
    strategy = await container.strategy_store.get(strategy_id)
    if strategy is None:
        raise HTTPException(status_code=404, detail=f"Strategy {strategy_id} not found")
    return strategy


@router.get("")
async def list_strategies(
    active_only: bool = False,
    container: ServiceContainer = Depends(get_container),
):
    strategies = await container.strategy_store.list(active_only=active_only)
    return {"strategies": [s.to_dict() for s in strategies], "total": len(strategies)}


@router.get("/{strategy_id}/metrics")
async def get_strategy_metrics(
    strategy_id: str,
    container: ServiceContainer = Depends(get_container),
):
    """Statistics, recent outcome counts and today's risk counters."""
    metrics = await container.strategy_engine.get_strategy_metrics(strategy_id)
    if metrics is None:
        raise HTTPException(status_code=404, detail=f"Strategy {strategy_id} not found")
    return metrics


@router.post("/{strategy_id}/reset-counters")
async def reset_strategy_counters(
    strategy_id: str,
    container: ServiceContainer = Depends(get_container),
):
    """Clear today's trade count, loss and cooldown for one strategy."""
    await _get_strategy(container, strategy_id)
    container.risk_manager.reset_strategy_counters(strategy_id)
    logger.info(f"Risk counters reset for strategy {strategy_id}")
    return {
        "success": True,
        "strategy_id": strategy_id,
        "risk": container.risk_manager.get_risk_stats(strategy_id),
    }


@router.get("/{strategy_id}/risk")
async def get_strategy_risk(
    strategy_id: str,
    container: ServiceContainer = Depends(get_container),
):
    strategy = await _get_strategy(container, strategy_id)
    return {
        "strategy_id": strategy_id,
        "limits": strategy.to_dict()["risk"],
        "today": container.risk_manager.get_risk_stats(strategy_id),
        "market_hours": container.risk_manager.session.describe(),
    }
