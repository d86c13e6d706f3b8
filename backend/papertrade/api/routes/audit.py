"""
Audit Trail API Routes
PaperTrade Platform

Read access to the signal audit trail.
"""

from typing import Optional
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query

from papertrade.api.deps import get_container
from papertrade.container import ServiceContainer
from papertrade.services.audit_trail import AuditEventType

router = APIRouter()


@router.get("/logs")
async def get_audit_logs(
    strategy_id: Optional[str] = None,
    event_type: Optional[str] = None,
    symbol: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    container: ServiceContainer = Depends(get_container),
):
    """Most recent matching events, oldest first."""
    try:
        event_types = [AuditEventType(event_type.upper())] if event_type else None
        start_dt = datetime.fromisoformat(start_date) if start_date else None
        end_dt = datetime.fromisoformat(end_date) if end_date else None
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    events = await container.audit_trail.query_events(
        event_types=event_types,
        strategy_id=strategy_id,
        symbol=symbol.upper() if symbol else None,
        start_time=start_dt,
        end_time=end_dt,
        limit=limit,
    )
    return {"logs": [e.to_dict() for e in events], "total": len(events)}


@router.get("/stats")
async def get_audit_stats(container: ServiceContainer = Depends(get_container)):
    return container.audit_trail.get_stats()
