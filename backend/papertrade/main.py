"""
PaperTrade Platform - FastAPI Application
Main entry point with proper lifecycle management.

Webhook signals enter through /api/webhook/tradingview and flow through
the StrategyEngine (validation, dedup, risk admission) into the
OrderExecutor, which settles them on the virtual ledger. Cached prices
are streamed to WebSocket clients at /api/realtime/ws/prices.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from papertrade.api import api_router
from papertrade.container import ServiceContainer
from papertrade.core.config import Settings, get_settings
from papertrade.core.logging import setup_logging
from papertrade.db.session import health_check as db_health_check


def create_application(
    container: Optional[ServiceContainer] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        container: Prebuilt services; built from settings at startup when omitted
        settings: Defaults to get_settings()
    """
    settings = settings or (container.settings if container else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        # ---------------------------------------------------------------------
        # Startup
        # ---------------------------------------------------------------------
        setup_logging(settings.logging)
        logger.info("=" * 60)
        logger.info(f"Starting {settings.PROJECT_NAME}...")
        logger.info(f"Environment: {settings.ENVIRONMENT}")
        logger.info(f"Storage: {settings.STORAGE_BACKEND}")
        logger.info("=" * 60)

        services = container or await ServiceContainer.from_settings(settings)
        app.state.container = services
        await services.start_all()

        logger.info("-" * 60)
        logger.info(f"{settings.PROJECT_NAME} API ready to accept requests")
        logger.info("-" * 60)

        yield

        # ---------------------------------------------------------------------
        # Shutdown
        # ---------------------------------------------------------------------
        logger.info("=" * 60)
        logger.info(f"Shutting down {settings.PROJECT_NAME}...")
        await services.stop_all()
        logger.info(f"{settings.PROJECT_NAME} shutdown complete")
        logger.info("=" * 60)

    application = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.APP_VERSION,
        description="Paper trading execution pipeline for webhook signals",
        lifespan=lifespan,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(api_router, prefix="/api")

    @application.get("/health")
    async def health(request: Request):
        """
        Health check endpoint for load balancers and monitoring.
        """
        services: Optional[ServiceContainer] = getattr(request.app.state, "container", None)
        health_status = {
            "status": "healthy",
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "storage": settings.STORAGE_BACKEND,
        }

        if services is None:
            health_status["status"] = "starting"
            return health_status

        if services.session_factory is not None:
            db_healthy = await db_health_check(services.session_factory)
            health_status["database"] = "connected" if db_healthy else "disconnected"
            if not db_healthy:
                health_status["status"] = "degraded"

        health_status["market_open"] = services.risk_manager.is_market_open()
        health_status["tracked_symbols"] = len(services.price_cache.symbols())
        return health_status

    return application


# Create application instance
app = create_application()
