"""
Location ingestion API Endpoints.

Transport clients post driver GPS samples here.
"""

from fastapi import APIRouter, Depends, Body, status

from kanghoo.app.core.dependencies import get_tracking_service
from kanghoo.app.core.exceptions import raise_for_result
from kanghoo.app.schemas.tracking import LocationCreate
from kanghoo.app.services.tracking_persistence import TrackingPersistenceService

router = APIRouter(tags=["Locations"])


@router.post("/locations", status_code=status.HTTP_201_CREATED)
async def save_location(
    location: LocationCreate = Body(...),
    service: TrackingPersistenceService = Depends(get_tracking_service)
):
    """
    Record a GPS sample for a driver.

    The sample becomes the driver's current location and is appended to
    the driver's active trip and location history.
    """
    result = await service.save_location(
        driver_id=location.driver_id,
        route_id=location.route_id,
        latitude=location.latitude,
        longitude=location.longitude,
        speed=location.speed,
        heading=location.heading,
        timestamp=location.timestamp
    )
    raise_for_result(result)
    return result.to_response()
