"""
Admin API
PaperTrade Platform

Executor configuration, emergency stop and operational diagnostics.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from loguru import logger

from papertrade.api.deps import get_container
from papertrade.container import ServiceContainer
from papertrade.core.errors import ValidationError
from papertrade.schemas.signal import ExecutorConfigUpdate
from papertrade.services.audit_trail import AuditEventType, AuditStatus
from papertrade.services.error_handler import ErrorCategory, ErrorSeverity

router = APIRouter()


# =============================================================================
# Executor
# =============================================================================

@router.get("/executor")
async def get_executor(container: ServiceContainer = Depends(get_container)):
    executor = container.order_executor
    return {"config": executor.get_config(), "stats": executor.get_stats()}


@router.put("/executor")
async def update_executor(
    update: ExecutorConfigUpdate,
    container: ServiceContainer = Depends(get_container),
):
    """Change mode, slippage or latency. Fields left out keep their value."""
    executor = container.order_executor
    try:
        if update.mode is not None:
            executor.set_mode(update.mode)
        if update.slippage_percent is not None:
            executor.set_slippage(update.slippage_percent)
        if update.execution_delay_ms is not None:
            executor.set_execution_delay(update.execution_delay_ms)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.message)
    return {"success": True, "config": executor.get_config()}


# =============================================================================
# Emergency controls
# =============================================================================

@router.post("/emergency-stop")
async def emergency_stop(container: ServiceContainer = Depends(get_container)):
    """Deactivate every strategy and clear all risk counters."""
    deactivated = await container.risk_manager.emergency_stop()
    await container.audit_trail.log_event(
        AuditEventType.RISK_LIMIT_HIT,
        AuditStatus.SUCCESS,
        reason="Emergency stop",
        metadata={"deactivated": deactivated},
    )
    return {
        "success": True,
        "message": "Emergency stop executed. All strategies deactivated.",
        "deactivated": deactivated,
    }


@router.post("/signal-cache/clear")
async def clear_signal_cache(container: ServiceContainer = Depends(get_container)):
    cleared = await container.strategy_engine.clear_signal_cache()
    return {"success": True, "cleared": cleared}


# =============================================================================
# Diagnostics
# =============================================================================

@router.get("/errors")
async def get_errors(
    category: Optional[ErrorCategory] = None,
    severity: Optional[ErrorSeverity] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    container: ServiceContainer = Depends(get_container),
):
    handler = container.error_handler
    errors = handler.get_errors(category=category, severity=severity, limit=limit)
    return {
        "stats": handler.get_error_stats(),
        "errors": [e.to_dict() for e in errors],
    }


@router.get("/status")
async def get_status(container: ServiceContainer = Depends(get_container)):
    status = await container.get_status()
    logger.debug(f"Status requested: {status['strategy_engine']}")
    return status
