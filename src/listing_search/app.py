"""FastAPI application factory and lifespan management."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from listing_search.config import Settings
from listing_search.errors import (
    MappingError,
    ReindexInProgressError,
    SearchUnavailableError,
    TransientBackendError,
)
from listing_search.lifecycle import SearchRuntime
from listing_search.middleware.auth import AdminKeyMiddleware
from listing_search.middleware.logging import RequestLoggingMiddleware
from listing_search.routes import admin, health, search

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application lifecycle events.

    Starts the search runtime (clients, sync subscriber, cache sweeper,
    drift monitor) on startup and shuts it down on exit.

    Args:
        app: FastAPI application instance.

    Yields:
        None during application runtime.
    """
    settings: Settings = app.state.settings
    logger.info("api_startup", host=settings.host, port=settings.port)

    runtime: SearchRuntime = app.state.runtime or SearchRuntime(settings)
    await runtime.start()

    app.state.runtime = runtime
    app.state.store = runtime.store
    app.state.orchestrator = runtime.orchestrator
    app.state.sync_service = runtime.sync_service
    app.state.feed = runtime.feed
    app.state.cache = runtime.cache

    try:
        yield
    finally:
        await runtime.close()
        logger.info("api_shutdown")


async def _unavailable(request: Request, exc: Exception) -> JSONResponse:
    logger.warning("request_unavailable", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": str(exc)},
    )


async def _reindex_conflict(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"detail": str(exc)},
    )


async def _mapping_failed(request: Request, exc: Exception) -> JSONResponse:
    listing_id = exc.listing_id if isinstance(exc, MappingError) else None
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": str(exc), "listing_id": listing_id},
    )


def create_app(
    settings: Settings | None = None,
    runtime: SearchRuntime | None = None,
) -> FastAPI:
    """Factory function to create configured FastAPI application.

    Args:
        settings: Configuration instance. Creates default if None.
        runtime: Prebuilt runtime. Built from settings at startup if None.

    Returns:
        Configured FastAPI application.
    """
    if settings is None:
        settings = runtime.settings if runtime is not None else Settings()

    app = FastAPI(
        title="Mining Listing Search API",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/api/v1/docs" if settings.debug else None,
        redoc_url=None,
        openapi_url="/api/v1/openapi.json" if settings.debug else None,
    )
    app.state.settings = settings
    app.state.runtime = runtime

    app.add_middleware(RequestLoggingMiddleware)
    if settings.admin_key:
        app.add_middleware(AdminKeyMiddleware, api_key=settings.admin_key)

    app.add_exception_handler(SearchUnavailableError, _unavailable)
    app.add_exception_handler(TransientBackendError, _unavailable)
    app.add_exception_handler(ReindexInProgressError, _reindex_conflict)
    app.add_exception_handler(MappingError, _mapping_failed)

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(search.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")

    return app
