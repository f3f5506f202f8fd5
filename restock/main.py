"""Main application entry point."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from restock.api.routes import predictions
from restock.config import settings
from restock.db.models import Base
from restock.db.session import engine
from restock.logging_config import setup_logging
from restock.worker.run_lock import run_lock_manager
from restock.worker.scheduler import setup_scheduler

setup_logging()
logger = logging.getLogger(__name__)

# Global scheduler
scheduler = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global scheduler

    logger.info("Starting restock prediction engine...")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    if settings.scheduler_enabled:
        scheduler = setup_scheduler()
        scheduler.start()
        logger.info("Scheduler started")

    if not settings.cron_secret:
        logger.warning("CRON_SECRET is not configured; the run endpoint will refuse all requests")

    yield

    logger.info("Shutting down...")

    if scheduler:
        scheduler.shutdown()

    await run_lock_manager.close()
    await engine.dispose()

    logger.info("Shutdown complete")


app = FastAPI(
    title="Restock",
    description="Household purchase-cycle prediction engine",
    version="0.1.0",
    lifespan=lifespan,
)

instrumentator = Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    excluded_handlers=["/metrics", "/health"],
)
instrumentator.instrument(app).expose(app, include_in_schema=True, tags=["monitoring"])

app.include_router(predictions.router)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


if __name__ == "__main__":
    uvicorn.run(
        "restock.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
