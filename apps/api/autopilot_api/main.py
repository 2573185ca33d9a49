"""Main FastAPI application for the Autopilot trigger service."""

import logging
from contextlib import asynccontextmanager

from autopilot_common.base import utcnow
from autopilot_common.config import Database, get_app_settings
from autopilot_common.logging import setup_logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from autopilot_api.api.deps import TriggerServices, build_services
from autopilot_api.api.errors import register_trigger_error_handlers
from autopilot_api.api.v1 import v1_router

logger = logging.getLogger(__name__)


def create_app(services: TriggerServices | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        services: Prebuilt services, mainly for tests. When omitted the
            lifespan builds them around a fresh database and disposes it on
            shutdown.
    """
    app_settings = get_app_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(app_settings.LOG_LEVEL, app_settings.STRUCTURED_LOGGING)
        owned = services is None
        app.state.services = services or build_services(Database())
        logger.info("Application started successfully")
        try:
            yield
        finally:
            if owned:
                await app.state.services.database.dispose()
            logger.info("Application shut down")

    app = FastAPI(
        title=app_settings.APP_NAME,
        description=(
            "Unified execution triggers for agents: cron schedules, webhooks "
            "and provider integrations feeding one workflow dispatcher."
        ),
        version="0.1.0",
        debug=app_settings.DEBUG,
        lifespan=lifespan,
        openapi_tags=[
            {"name": "triggers", "description": "Operations with execution triggers"},
            {"name": "webhooks", "description": "Inbound webhook deliveries"},
            {"name": "integrations", "description": "Provider push notifications"},
        ],
    )
    if services is not None:
        app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(v1_router, tags=["v1"])
    register_trigger_error_handlers(app)

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy", "timestamp": utcnow().isoformat()}

    return app


app = create_app()
