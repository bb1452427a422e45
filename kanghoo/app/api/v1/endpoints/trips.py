"""
Trip API Endpoints.

Drivers start and finish trips and record children boarding and alighting.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Path, Body, status

from kanghoo.app.core.dependencies import get_tracking_service
from kanghoo.app.core.exceptions import raise_for_result
from kanghoo.app.schemas.tracking import EventCreate, TripCreate, TripFinish
from kanghoo.app.services.tracking_persistence import TrackingPersistenceService

router = APIRouter(prefix="/trips", tags=["Trips"])


@router.post("", status_code=status.HTTP_201_CREATED)
async def start_trip(
    trip: TripCreate = Body(...),
    service: TrackingPersistenceService = Depends(get_tracking_service)
):
    """Start a trip for a driver on a route."""
    result = await service.start_trip(
        driver_id=trip.driver_id,
        route_id=trip.route_id,
        trip_type=trip.trip_type,
        child_ids=trip.child_ids
    )
    raise_for_result(result)
    return result.to_response()


@router.post("/{trip_id}/finish")
async def finish_trip(
    trip_id: str = Path(..., description="Trip ID"),
    payload: Optional[TripFinish] = Body(None),
    service: TrackingPersistenceService = Depends(get_tracking_service)
):
    """
    Finish an active trip.

    Sets the end time and final metrics. A finished trip cannot be
    finished again.
    """
    payload = payload or TripFinish()
    result = await service.finalize_trip(
        trip_id,
        total_distance=payload.total_distance,
        total_duration_seconds=payload.total_duration_seconds,
        notes=payload.notes
    )
    raise_for_result(result)
    return result.to_response()


@router.post("/{trip_id}/events", status_code=status.HTTP_201_CREATED)
async def record_event(
    trip_id: str = Path(..., description="Trip ID"),
    event: EventCreate = Body(...),
    service: TrackingPersistenceService = Depends(get_tracking_service)
):
    """Record a child boarding or alighting during an active trip."""
    result = await service.record_event(
        event.type,
        trip_id,
        event.child_id,
        event.latitude,
        event.longitude,
        timestamp=event.timestamp,
        notes=event.notes
    )
    raise_for_result(result)
    return result.to_response()


@router.get("/{trip_id}")
async def get_trip(
    trip_id: str = Path(..., description="Trip ID"),
    service: TrackingPersistenceService = Depends(get_tracking_service)
):
    """Trip details with its events and statistics."""
    result = await service.get_trip_data(trip_id)
    raise_for_result(result)
    return result.to_response()
