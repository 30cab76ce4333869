"""FastAPI application factory for the cache service."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from cacheguard.api.health import admin_router, router
from cacheguard.config import Settings
from cacheguard.observability.logging import configure_logging
from cacheguard.orchestration.context import ResilienceContext

logger = structlog.get_logger(__name__)


def create_app(
    context: ResilienceContext | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    """Create the application.

    Args:
        context: Prebuilt context; built from settings at startup if omitted.
        settings: Settings; loaded from the environment if omitted.

    Returns:
        Configured FastAPI application.
    """
    settings = settings or (context.settings if context else Settings.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging(settings.LOG_LEVEL, json_format=settings.LOG_JSON)
        owned = context is None
        app.state.resilience = context or ResilienceContext.create(settings)
        logger.info("application_starting", service=settings.SERVICE_NAME)

        yield

        logger.info("application_shutting_down")
        if owned:
            await app.state.resilience.close()

    app = FastAPI(title=settings.SERVICE_NAME, lifespan=lifespan)
    if context is not None:
        app.state.resilience = context
    app.include_router(router)
    app.include_router(admin_router)
    return app
