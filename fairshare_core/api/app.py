"""
Admin Application
=================

FastAPI application hosting the admin routes, with the coordinator's
background sweeper tied to the application lifespan.
"""

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI

from fairshare_core.allocation import AllocationCoordinator
from fairshare_core.config import EngineSettings, get_settings
from fairshare_core.core.logging import configure_logging

from .admin import create_admin_router

logger = structlog.get_logger(__name__)


def create_app(
    coordinator: Optional[AllocationCoordinator] = None,
    settings: Optional[EngineSettings] = None,
    api_prefix: str = "/admin",
) -> FastAPI:
    """
    Create and configure the admin application.

    Args:
        coordinator: Coordinator to expose; one is built from settings if omitted
        settings: Engine settings
        api_prefix: Mount point of the admin routes

    Returns:
        Configured FastAPI application
    """
    settings = settings or get_settings()
    coordinator = coordinator or AllocationCoordinator(settings=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(
            level=settings.log_level,
            log_format=settings.log_format,
            service_name=settings.service_name,
        )
        logger.info("Starting allocation engine", service=settings.service_name)
        await coordinator.start()

        yield

        logger.info("Shutting down allocation engine")
        await coordinator.stop()

    app = FastAPI(
        title="Fairshare Allocation Engine",
        description="Read-only operator view of quotas, queues and hoarding flags.",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.coordinator = coordinator
    app.state.settings = settings

    app.include_router(create_admin_router(coordinator), prefix=api_prefix)

    @app.get("/health")
    async def health():
        return {"status": "ok", "sweeper_running": coordinator.is_running}

    return app
