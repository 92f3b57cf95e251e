"""Calendar sync API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- Lifespan handler that connects the database, ensures the schema, and
  starts the webhook dispatcher and renewal scheduler
- Error envelope handlers (see :mod:`calsync.api.middleware`)
- Sync configuration, conflict, webhook and health routers
- Prometheus metrics at GET /metrics
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from calsync import __version__
from calsync.api.deps import init_services, shutdown_services
from calsync.api.middleware import register_error_handlers
from calsync.api.routers.conflicts import router as conflicts_router
from calsync.api.routers.health import router as health_router
from calsync.api.routers.sync_configs import router as sync_configs_router
from calsync.api.routers.webhooks import router as webhooks_router
from calsync.config import CalsyncConfig
from calsync.services import Services, connect_services
from calsync.stores.schema import ensure_schema

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle for the DB pool and background components."""
    services: Services | None = app.state.services
    if services is None:
        config: CalsyncConfig = app.state.config
        services = await connect_services(config)
        assert services.database is not None
        await ensure_schema(await services.database.connect())
        app.state.services = services

    init_services(services)
    await services.start()
    logger.info("Calendar sync API started")

    yield

    await services.stop()
    shutdown_services()
    logger.info("Calendar sync API stopped")


def create_app(
    config: CalsyncConfig | None = None,
    services: Services | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    config:
        Service configuration; defaults are used when omitted.
    services:
        A pre-built component graph.  When omitted, the lifespan connects
        to Postgres using ``DATABASE_URL`` / ``POSTGRES_*``.
    """
    app = FastAPI(
        title="Calendar Sync API",
        version=__version__,
        lifespan=lifespan,
    )
    app.router.redirect_slashes = False
    app.state.config = config or (services.config if services else CalsyncConfig())
    app.state.services = services

    register_error_handlers(app)

    app.include_router(sync_configs_router)
    app.include_router(conflicts_router)
    app.include_router(webhooks_router)
    app.include_router(health_router)

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        """Prometheus metrics endpoint."""
        return Response(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)

    return app
