"""
Main FastAPI application entry point.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, status
from fastapi.responses import JSONResponse

import structlog

from paygate.core.config import settings
from paygate.core.logging import setup_logging
from paygate.core.database import init_database, close_database, DatabaseManager
from paygate.api.middleware import add_middleware
from paygate.api.routes import indexers
from paygate.api.schemas.common import APIResponse, HealthCheckResponse
from paygate.indexer.manager import IndexerManager
from paygate.services.payment_store import PaymentStore


logger = structlog.get_logger(__name__)


def create_app(
    indexer_manager: Optional[IndexerManager] = None,
    autostart: Optional[bool] = None
) -> FastAPI:
    """
    Build the API application.

    Args:
        indexer_manager: Pre-built manager; when omitted one is built from
            settings during startup, together with the database connection
        autostart: Start every indexer on startup (default from settings)
    """
    autostart = settings.indexer_autostart if autostart is None else autostart

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        # Startup
        logger.info("Starting Paygate Indexer", version=settings.app_version)
        owns_database = False

        try:
            if app.state.indexer_manager is None:
                session_maker = await init_database()
                owns_database = True
                app.state.indexer_manager = IndexerManager.from_settings(PaymentStore(session_maker))
                logger.info("Indexer manager created")

            if autostart:
                results = await app.state.indexer_manager.start_all()
                logger.info(
                    "Indexers autostarted",
                    started=[r.chain_name for r in results if r.success],
                    failed=[r.chain_name for r in results if not r.success]
                )

        except Exception as e:
            logger.error("Startup failed", error=str(e))
            raise

        logger.info("Application startup complete")

        yield

        # Shutdown
        logger.info("Shutting down application")
        try:
            await app.state.indexer_manager.shutdown()
            if owns_database:
                await close_database()
                logger.info("Database connections closed")
        except Exception as e:
            logger.error("Shutdown error", error=str(e))

        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Paygate Indexer API",
        version=settings.app_version,
        description="""
        Status and control API for the multi-chain payment gateway indexer.

        ## Features

        * **Per-chain status** - watcher state, cursor and counters
        * **Fleet control** - start, stop and restart all watchers
        * **Chain control** - start or stop a single chain's watcher
        """,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan
    )
    app.state.indexer_manager = indexer_manager

    add_middleware(app)

    @app.get(
        "/health",
        response_model=HealthCheckResponse,
        tags=["System"],
        summary="Health Check",
        description="Check database connectivity and indexer fleet state"
    )
    async def health_check():
        """Health check endpoint."""
        manager: Optional[IndexerManager] = app.state.indexer_manager
        indexer_summary = manager.get_manager_status() if manager else {}

        if await DatabaseManager.health_check():
            return HealthCheckResponse(
                status="healthy",
                version=settings.app_version,
                services={"database": "healthy", "api": "healthy"},
                indexers=indexer_summary
            )

        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "unhealthy",
                "version": settings.app_version,
                "services": {"database": "unhealthy", "api": "healthy"},
                "indexers": indexer_summary
            }
        )

    @app.get(
        "/",
        response_model=APIResponse,
        tags=["System"],
        summary="API Information"
    )
    async def root():
        """Root endpoint with API information."""
        return APIResponse(
            message=f"Paygate Indexer API v{settings.app_version} ({settings.environment})"
        )

    app.include_router(
        indexers.router,
        prefix=f"{settings.api_v1_prefix}/indexers",
        tags=["Indexers"]
    )

    return app


# Setup logging
setup_logging()

app = create_app()

logger.info("FastAPI application configured successfully")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "paygate.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
        log_level=settings.log_level.lower()
    )
