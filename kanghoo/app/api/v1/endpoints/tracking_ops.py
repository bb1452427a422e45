"""
Tracking Ops Endpoints.

Store statistics and manual maintenance.
"""

from fastapi import APIRouter, Depends, Request, Response

from kanghoo.app.core.config import settings
from kanghoo.app.core.dependencies import get_cache_manager, get_tracking_service
from kanghoo.app.core.exceptions import raise_for_result
from kanghoo.app.services.cache_manager import CacheManager, cache_response
from kanghoo.app.services.tracking_persistence import TrackingPersistenceService

router = APIRouter(tags=["Ops"])


@router.get("/tracking/stats")
@cache_response(settings.stats_cache_ttl_seconds)
async def get_tracking_stats(
    request: Request,
    response: Response,
    service: TrackingPersistenceService = Depends(get_tracking_service),
    cache: CacheManager = Depends(get_cache_manager)
):
    """
    Sizes of the tracking stores.

    Served from the cache for a short window to keep dashboards cheap.
    """
    result = await service.get_cache_stats()
    raise_for_result(result)
    return result.to_response()


@router.post("/tracking/sweep")
async def sweep_tracking_stores(
    service: TrackingPersistenceService = Depends(get_tracking_service)
):
    """Run the stale-entry sweep now instead of waiting for the timer."""
    result = await service.clear_stale_cache()
    raise_for_result(result)
    return result.to_response()


@router.get("/cache/stats")
async def get_cache_stats(cache: CacheManager = Depends(get_cache_manager)):
    """Entry counts, footprint and hit rate of the cache manager."""
    stats = await cache.get_stats()
    return {"success": True, "data": stats.model_dump(mode="json")}
