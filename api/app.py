"""
TourDash API

FastAPI application exposing the dashboard data layer:
1. Creator dashboard composite with cached slices and manual refresh
2. Unified analytics per project / end client / creator
3. Analytics CSV import and reset
4. Cache health, statistics and invalidation
5. Persistent user preferences
"""

import logging
import sys
from typing import Optional

from fastapi import FastAPI

from api import analytics, cache, dashboard, preferences
from api.deps import build_components
from tourdash import __version__
from tourdash.cache.service import CacheService, close_cache_service, get_cache_service
from tourdash.database import check_db_connection, init_db
from tourdash.integrations.base import RemoteDataSource
from tourdash.integrations.config import create_supabase_client
from tourdash.utils.config import get_settings

# Configure logging to stdout
logging.basicConfig(
    level=getattr(logging, get_settings().LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    stream=sys.stdout,
    force=True,
)

logger = logging.getLogger(__name__)

# Quiet down chatty loggers
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


def create_app(
    service: Optional[CacheService] = None,
    source: Optional[RemoteDataSource] = None,
) -> FastAPI:
    """
    Build the application.

    With no arguments the process-wide cache service and a Supabase client
    from the environment are used. Tests pass their own.
    """
    app = FastAPI(
        title="TourDash Data API",
        description="Cached dashboard, analytics and preference endpoints for virtual-tour creators",
        version=__version__,
    )

    app.include_router(dashboard.router)
    app.include_router(analytics.router)
    app.include_router(cache.router)
    app.include_router(preferences.router)

    @app.on_event("startup")
    async def startup_event():
        """Initialize database, cache service and remote source."""
        owns_service = service is None
        if owns_service:
            logger.info("Initializing database...")
            try:
                init_db()
                if check_db_connection():
                    logger.info("Database connection verified")
                else:
                    logger.warning("Database connection check failed - continuing anyway")
            except Exception as e:
                logger.error(f"Database initialization failed: {e}")
                # Preferences degrade to defaults without a database

        active_service = service or await get_cache_service()
        await active_service.init()

        active_source = source if source is not None else create_supabase_client()
        app.state.owns_service = owns_service
        app.state.owns_source = source is None
        app.state.components = build_components(active_service, active_source)
        logger.info("TourDash API ready")

    @app.on_event("shutdown")
    async def shutdown_event():
        components = getattr(app.state, "components", None)
        if components is None:
            return
        if app.state.owns_source and components.source is not None:
            await components.source.close()
        if app.state.owns_service:
            await close_cache_service()
        app.state.components = None
        logger.info("TourDash API stopped")

    @app.get("/")
    async def root():
        return {"service": "tourdash", "version": __version__, "status": "ok"}

    return app


app = create_app()


# ============================================================================
# MAIN
# ============================================================================

if __name__ == "__main__":
    import uvicorn
    from dotenv import load_dotenv

    # CacheConfig reads os.environ directly
    load_dotenv()

    uvicorn.run(
        "api.app:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
