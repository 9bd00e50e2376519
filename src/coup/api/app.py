"""FastAPI application for calendar sync and schedule classification."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from coup import __version__
from coup.api.deps import init_dependencies, shutdown_dependencies
from coup.api.middleware import register_error_handlers
from coup.api.routers import calendar_settings, calendar_sync, schedules
from coup.config import CoupConfig

logger = logging.getLogger(__name__)

DEFAULT_CORS_ORIGINS = ("http://localhost:3000",)


@asynccontextmanager
async def lifespan(app: FastAPI):
    config: CoupConfig = app.state.config
    await init_dependencies(config)
    logger.info("API ready; schedules are interpreted in %s", config.calendar.timezone)
    try:
        yield
    finally:
        await shutdown_dependencies()


def create_app(
    config: CoupConfig | None = None,
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """Build the app. Resources are opened by the lifespan, not here.

    Tests can therefore construct the app and swap ``get_store`` or
    ``get_calendar_client`` through ``dependency_overrides`` without a
    database.
    """
    app = FastAPI(title="coup", version=__version__, lifespan=lifespan)
    app.state.config = config or CoupConfig()
    app.router.redirect_slashes = False

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(cors_origins or DEFAULT_CORS_ORIGINS),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(app)

    for module in (calendar_sync, calendar_settings, schedules):
        app.include_router(module.router)

    @app.get("/api/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app
