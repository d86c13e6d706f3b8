"""API router initialization"""
from fastapi import APIRouter

from papertrade.api.routes import admin, audit, market, orders, strategies, webhook, websocket

api_router = APIRouter()

api_router.include_router(webhook.router, prefix="/webhook", tags=["webhook"])
api_router.include_router(strategies.router, prefix="/strategies", tags=["strategies"])
api_router.include_router(market.router, prefix="/market", tags=["market"])
api_router.include_router(orders.router, prefix="/orders", tags=["orders"])
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
api_router.include_router(audit.router, prefix="/audit", tags=["audit"])
# Real-time WebSocket price streaming
api_router.include_router(websocket.router, prefix="/realtime", tags=["realtime"])
