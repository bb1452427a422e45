"""
FastAPI Application Entry Point.

This is the main application file for the Kanghoo Tracking Service.
"""

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from kanghoo.app.core.config import settings
from kanghoo.app.api.v1.router import router as api_v1_router
from kanghoo.app.core.observability import ObservabilityMiddleware
from kanghoo.app.core.redis_client import redis_client, ping_redis
from kanghoo.app.db.session import engine, Base, AsyncSessionLocal
from kanghoo.app.core.exceptions import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    generic_exception_handler
)
from kanghoo.app.services.cache_manager import CacheManager
from kanghoo.app.services.location_history import LocationHistoryStore
from kanghoo.app.services.tracking_persistence import TrackingPersistenceService

# Import models to ensure they are registered with Base
from kanghoo.app.models.location_history import LocationHistory  # noqa: F401

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("kanghoo")


def create_tracking_service() -> TrackingPersistenceService:
    history = LocationHistoryStore(AsyncSessionLocal) if settings.history_enabled else None
    return TrackingPersistenceService(
        history,
        location_timeout_seconds=settings.location_cache_timeout_seconds,
        finished_trip_retention_seconds=settings.finished_trip_retention_seconds,
        sweep_interval_seconds=settings.tracking_sweep_interval_seconds,
        history_max_limit=settings.history_max_limit,
        simulate_history=settings.simulate_location_history,
    )


def create_cache_manager() -> CacheManager:
    return CacheManager(
        redis_client,
        default_ttl_seconds=settings.cache_default_ttl_seconds,
        max_memory_items=settings.cache_max_memory_items,
        storage_prefix=settings.cache_storage_prefix,
        persist_keys=settings.cache_persist_keys,
        cleanup_interval_seconds=settings.cache_cleanup_interval_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for application startup/shutdown.

    1. Creates the location history table on startup.
    2. Builds the tracking service and cache manager and starts their
       periodic sweeps.
    3. Stops the sweeps and releases connections on shutdown.
    """
    if settings.history_enabled:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    app.state.tracking_service = create_tracking_service()
    app.state.cache_manager = create_cache_manager()
    app.state.tracking_service.start()
    app.state.cache_manager.start()
    logger.info("%s %s started", settings.app_name, settings.api_version)

    yield

    await app.state.tracking_service.shutdown()
    await app.state.cache_manager.shutdown()
    await redis_client.aclose()
    await engine.dispose()
    logger.info("%s stopped", settings.app_name)

# Initialize FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.api_version,
    debug=settings.debug,
    description="Trip, location and boarding tracking for Kanghoo school transport",
    lifespan=lifespan,
)

app.add_middleware(ObservabilityMiddleware)

# Register global exception handlers
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint.

    Returns:
        dict: Status, application information and Redis reachability
    """
    return {
        "status": "healthy",
        "app_name": settings.app_name,
        "version": settings.api_version,
        "redis": await ping_redis(),
    }


# Include API v1 router
app.include_router(api_v1_router, prefix=f"/{settings.api_version}")


@app.get("/", tags=["Root"])
async def root():
    """
    Root endpoint.

    Returns:
        dict: Welcome message and API documentation links
    """
    return {
        "message": "Welcome to Kanghoo Tracking Service API",
        "docs": "/docs",
        "health": "/health",
    }
