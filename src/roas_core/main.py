"""roas-core FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from .api.routes import router as api_router
from .api.routes import ws_router
from .config import Settings
from .context import IngestionContext
from .scheduler import IngestionScheduler


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)


def create_app(
    context: Optional[IngestionContext] = None,
    start_scheduler: Optional[bool] = None,
) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        context: Pre-built context (tests); built from the environment if omitted
        start_scheduler: Override SCHEDULER_ENABLED
    """
    if context is None:
        context = IngestionContext(Settings.from_env())
    if start_scheduler is None:
        start_scheduler = context.settings.scheduler_enabled

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await context.start()
        scheduler = IngestionScheduler(context)
        if start_scheduler:
            scheduler.start()
            await context.refresh_cache()
        app.state.scheduler = scheduler
        try:
            yield
        finally:
            scheduler.shutdown()
            await context.close()

    app = FastAPI(
        title="roas-core API",
        version="0.1.0",
        description="Order and ad metrics ingestion with ROAS/profit derivation",
        lifespan=lifespan,
    )
    app.state.context = context

    app.include_router(api_router)
    app.include_router(ws_router)

    return app


app = create_app()
