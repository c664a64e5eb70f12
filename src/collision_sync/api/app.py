"""FastAPI application with lifespan and router mounting."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from collision_sync.api.routes import health, imports
from collision_sync.core.config import AppSettings
from collision_sync.core.logging import configure_logging
from collision_sync.ingest.runner import ImportRunner
from collision_sync.persistence import create_persistence


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Initialize and tear down application resources."""
    settings: AppSettings = app.state.settings
    configure_logging(settings.log_level)
    if getattr(app.state, "runner", None) is None:
        persistence = create_persistence(settings)
        app.state.persistence = persistence
        app.state.runner = ImportRunner(
            persistence.store,
            file_store=persistence.file_store,
            config=settings.importer,
            shop_config=settings.shop,
        )
    yield


def create_app(settings: AppSettings | None = None, runner: ImportRunner | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    ``runner`` lets callers (tests, embedding services) supply pre-wired
    backends instead of building them from settings.
    """
    app = FastAPI(
        title="Collision Sync Estimate Import",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings or AppSettings()
    app.state.runner = runner
    app.include_router(health.router)
    app.include_router(imports.router, prefix="/imports")
    return app
