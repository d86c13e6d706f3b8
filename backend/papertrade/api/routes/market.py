"""Market data API endpoints - cached prices"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from papertrade.api.deps import get_container
from papertrade.container import ServiceContainer

router = APIRouter()


@router.get("/prices")
async def get_prices(
    symbols: Optional[str] = Query(default=None, description="Comma-separated symbols; all when omitted"),
    container: ServiceContainer = Depends(get_container),
):
    """Snapshots for several symbols. Unknown symbols are left out."""
    cache = container.price_cache
    if symbols:
        wanted = [s.strip().upper() for s in symbols.split(",") if s.strip()]
        snapshots = list(cache.get_many(wanted).values())
    else:
        snapshots = cache.all()
    return {"prices": [s.to_dict() for s in snapshots], "count": len(snapshots)}


@router.get("/prices/{symbol}")
async def get_price(
    symbol: str,
    container: ServiceContainer = Depends(get_container),
):
    """Snapshot for one symbol, seeding it from the instrument if untracked."""
    symbol = symbol.upper()
    cache = container.price_cache
    if cache.get(symbol) is None and not await cache.ensure_tracked(symbol):
        raise HTTPException(status_code=404, detail=f"No price available for {symbol}")
    return cache.get(symbol).to_dict()


@router.get("/status")
async def get_market_status(container: ServiceContainer = Depends(get_container)):
    risk = container.risk_manager
    return {
        "market_open": risk.is_market_open(),
        "market_hours": risk.session.describe(),
        "timestamp": container.clock.now().isoformat(),
        "price_cache": container.price_cache.get_status(),
        "price_feed": container.price_feed.get_status(),
        "realtime": container.hub.get_status(),
    }
