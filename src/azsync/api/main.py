"""FastAPI application factory."""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from azsync.api.routes import sync as sync_routes
from azsync.db.engine import get_engine
from azsync.sync.engine import SyncEngine

logger = logging.getLogger(__name__)


def create_app(sync_engine: Optional[SyncEngine] = None) -> FastAPI:
    """
    Build and return the FastAPI app.

    Args:
        sync_engine: Prebuilt engine (tests). When omitted, the lifespan
            builds one together with the scheduler and runs the scheduler
            for as long as the app is up.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if sync_engine is not None:
            yield
            return

        from azsync.scheduler.jobs import build_scheduler

        # Creates tables and runs migrations on first call (idempotent)
        scheduler, app.state.sync_engine = build_scheduler(get_engine())
        scheduler.start()
        logger.info("Scheduler started")
        try:
            yield
        finally:
            scheduler.shutdown(wait=False)

    app = FastAPI(
        title="Azure Sync API",
        description="Resumable chunked sync of Azure monitoring data",
        version="0.1.0",
        lifespan=lifespan,
    )
    if sync_engine is not None:
        app.state.sync_engine = sync_engine

    app.include_router(sync_routes.router, prefix="/sync", tags=["sync"])

    return app


# Module-level app instance for uvicorn
app = create_app()
