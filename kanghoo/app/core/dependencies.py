"""
Service dependencies for FastAPI.

Services are built once in the application lifespan and stored on
``app.state``; endpoints receive them through these dependencies.
"""

from fastapi import Request

from kanghoo.app.services.cache_manager import CacheManager
from kanghoo.app.services.tracking_persistence import TrackingPersistenceService


def get_tracking_service(request: Request) -> TrackingPersistenceService:
    """FastAPI dependency returning the application's tracking service."""
    return request.app.state.tracking_service


def get_cache_manager(request: Request) -> CacheManager:
    """FastAPI dependency returning the application's cache manager."""
    return request.app.state.cache_manager
