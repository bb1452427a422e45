"""
Driver tracking API Endpoints.

Dashboards read a driver's current position and recent history.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Path, Query, Request, Response

from kanghoo.app.core.config import settings
from kanghoo.app.core.dependencies import get_cache_manager, get_tracking_service
from kanghoo.app.core.exceptions import raise_for_result
from kanghoo.app.services.cache_manager import CacheManager, cache_response
from kanghoo.app.services.tracking_persistence import TrackingPersistenceService

router = APIRouter(prefix="/drivers", tags=["Drivers"])


@router.get("/{driver_id}/location")
async def get_current_location(
    driver_id: str = Path(..., description="Driver ID"),
    service: TrackingPersistenceService = Depends(get_tracking_service)
):
    """
    Latest known location of a driver.

    Returns 404 when nothing was reported and 410 when the last sample is
    older than the location timeout.
    """
    result = await service.get_current_location(driver_id)
    raise_for_result(result)
    return result.to_response()


@router.get("/{driver_id}/history")
@cache_response(settings.history_cache_ttl_seconds)
async def get_location_history(
    request: Request,
    response: Response,
    driver_id: str = Path(..., description="Driver ID"),
    limit: int = Query(100, ge=1, le=settings.history_max_limit),
    start: Optional[datetime] = Query(None, description="Only samples captured at or after"),
    end: Optional[datetime] = Query(None, description="Only samples captured at or before"),
    service: TrackingPersistenceService = Depends(get_tracking_service),
    cache: CacheManager = Depends(get_cache_manager)
):
    """Location history of a driver, most recent first. Cached briefly per query."""
    result = await service.get_location_history(
        driver_id, start_date=start, end_date=end, limit=limit
    )
    raise_for_result(result)
    return result.to_response()
