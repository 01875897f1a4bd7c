"""AEM FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager
from typing import Optional

import aiohttp
from fastapi import FastAPI

from .api.routes import router as api_router
from .config import AEMSettings
from .reporter.service import AEMReporter


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Own one reporter and its HTTP session for the app lifetime."""
    settings = getattr(app.state, "settings", None) or AEMSettings.from_env()
    app.state.settings = settings

    if not settings.api_key:
        logger.warning("AEM_API_KEY not set, API requests will be rejected")

    if not settings.is_configured:
        logger.warning("AEM_APP_ID/AEM_ACCESS_TOKEN not set, reporter disabled")
        app.state.reporter = None
        yield
        return

    timeout = aiohttp.ClientTimeout(total=60, connect=10)
    async with aiohttp.ClientSession(timeout=timeout) as session:
        reporter = AEMReporter.from_settings(settings, session)
        await reporter.start()
        app.state.reporter = reporter
        yield
        app.state.reporter = None


def create_app(settings: Optional[AEMSettings] = None) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        settings: Settings to run with; read from the environment at
            startup when omitted
    """
    app = FastAPI(
        title="AEM Reporter API",
        version="0.1.0",
        description="Aggregated Event Measurement attribution reporter",
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.include_router(api_router)

    return app


app = create_app()
