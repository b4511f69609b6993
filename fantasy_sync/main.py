"""
Main FastAPI application for the fantasy sync orchestrator.
"""
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI
from prometheus_client import make_asgi_app

from fantasy_sync.api.routes import sync
from fantasy_sync.core import metrics
from fantasy_sync.core.config import settings
from fantasy_sync.core.database import init_db
from fantasy_sync.core.logging import configure_logging, get_logger
from fantasy_sync.core.middleware import CorrelationIdMiddleware
from fantasy_sync.services.sync.errors import QueueError
from fantasy_sync.services.sync.runtime import SyncRuntime, build_runtime

configure_logging(
    level=settings.LOG_LEVEL,
    json_output=settings.LOG_JSON
)
logger = get_logger(__name__)


def create_app(runtime: Optional[SyncRuntime] = None, start_background: bool = True) -> FastAPI:
    """
    Build the application.

    Args:
        runtime: prebuilt runtime (tests); built from SYNC_PLUGIN at startup when omitted
        start_background: start the trigger scheduler and executor pool in the lifespan
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator:
        """Application lifespan events."""
        # Startup
        logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

        if app.state.runtime is None:
            init_db()
            app.state.runtime = build_runtime()

        if start_background:
            await app.state.runtime.start(with_scheduler=settings.SCHEDULER_ENABLED)
            logger.info("Trigger scheduler and executors started")

        logger.info("Application started")

        yield

        # Shutdown
        if start_background:
            await app.state.runtime.stop()
            logger.info("Trigger scheduler and executors stopped")
        logger.info("Shutting down application")

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Scheduling, deduplication and cascading of fantasy football data sync tasks",
        lifespan=lifespan
    )
    app.state.runtime = runtime

    app.add_middleware(CorrelationIdMiddleware)

    # Prometheus metrics
    app.mount("/metrics", make_asgi_app())

    app.include_router(sync.router, prefix="/api/v1")

    @app.get("/")
    async def root():
        """Root endpoint with API information."""
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "status": "running",
            "endpoints": {
                "sync": "/api/v1/sync",
                "docs": "/docs",
                "health": "/health",
                "metrics": "/metrics"
            }
        }

    @app.get("/health")
    async def health_check():
        """Health check with component-level status."""
        health_status = {
            "status": "healthy",
            "version": settings.APP_VERSION,
            "components": {}
        }

        current = app.state.runtime
        if current is None:
            health_status["status"] = "starting"
            return health_status

        try:
            health_status["components"]["queue"] = {
                "status": "connected",
                "counts": current.queue.get_task_counts()
            }
        except QueueError as e:
            logger.error(f"Queue health check failed: {e.message}")
            health_status["components"]["queue"] = {"status": "error", "error": e.message}
            health_status["status"] = "unhealthy"

        health_status["components"]["scheduler"] = {"running": current.scheduler.running}
        health_status["components"]["executors"] = {
            "running": current.executor_pool.running,
            "concurrency": current.executor_pool.concurrency
        }
        metrics.update_scheduler_metrics()

        if start_background and health_status["status"] == "healthy":
            if not current.executor_pool.running:
                health_status["status"] = "degraded"

        return health_status

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "fantasy_sync.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG
    )
