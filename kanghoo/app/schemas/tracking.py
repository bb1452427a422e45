"""
Tracking schemas: domain records, request bodies and the service envelope.
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from datetime import datetime
from typing import Any, Dict, Generic, List, Optional, TypeVar, Union

from kanghoo.app.core.exceptions import ErrorKind
from kanghoo.app.models.tracking_enums import EventType, TripStatus, TripType

DataT = TypeVar("DataT")


# Domain records

class LocationSample(BaseModel):
    """One GPS reading for a driver."""
    model_config = ConfigDict(from_attributes=True)

    driver_id: str
    route_id: Optional[str] = None
    latitude: float
    longitude: float
    speed: float = 0.0
    heading: int = 0
    timestamp: datetime  # capture time
    cached_at: datetime  # store time



class TripEvent(BaseModel):
    """Boarding or alighting of one child during a trip."""
    id: str
    trip_id: str
    event_type: EventType
    child_id: str
    latitude: float
    longitude: float
    timestamp: datetime
    locality: str
    notes: str = ""


class Trip(BaseModel):
    """One transport run, started and later finalized by a driver."""
    id: str
    driver_id: str
    route_id: str
    trip_type: TripType = TripType.OUTBOUND
    status: TripStatus = TripStatus.STARTED
    child_ids: List[str] = Field(default_factory=list)
    locations: List[LocationSample] = Field(default_factory=list)
    started_at: datetime
    ended_at: Optional[datetime] = None
    total_distance: float = 0.0
    total_duration_seconds: int = 0
    notes: str = ""


class TripStatistics(BaseModel):
    total_events: int
    boardings: int
    alightings: int
    duration_minutes: int


class TripDetail(Trip):
    """Trip merged with its event log."""
    events: List[TripEvent] = Field(default_factory=list)
    total_events: int = 0
    statistics: TripStatistics


class SweepReport(BaseModel):
    """Outcome of one stale-entry sweep."""
    locations_removed: int = 0
    trips_removed: int = 0
    event_lists_removed: int = 0
    remaining: int = 0


class TrackingStats(BaseModel):
    """Sizes of the in-memory tracking stores."""
    total_items: int
    locations: int
    trips: int
    active_trips: int
    event_lists: int
    estimated_kb: int
    location_timeout_seconds: int
    finished_trip_retention_seconds: int
    generated_at: datetime


# Service envelope

class ServiceError(BaseModel):
    kind: ErrorKind
    message: str


class ServiceResult(BaseModel, Generic[DataT]):
    """
    Uniform result of every tracking service operation.

    Operations never raise to the caller; a failure is ``success=False``
    with an ``error`` describing its kind.
    """
    success: bool
    data: Optional[DataT] = None
    error: Optional[ServiceError] = None
    id: Optional[str] = None
    trip_id: Optional[str] = None
    event_id: Optional[str] = None
    total: Optional[int] = None

    @classmethod
    def ok(cls, data: Any = None, **extra: Any) -> "ServiceResult":
        return cls(success=True, data=data, **extra)

    @classmethod
    def fail(cls, kind: ErrorKind, message: str) -> "ServiceResult":
        return cls(success=False, error=ServiceError(kind=kind, message=message))

    def to_response(self) -> Dict[str, Any]:
        """JSON body with unused top-level keys removed."""
        body = self.model_dump(mode="json")
        return {key: value for key, value in body.items() if value is not None or key == "data"}


# Request bodies (camelCase or snake_case accepted)

class _RequestModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LocationCreate(_RequestModel):
    """Schema for recording a driver GPS location."""
    driver_id: str = Field(..., min_length=1)
    route_id: Optional[str] = None
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    speed: Optional[Union[float, str]] = None  # coerced by the service, junk -> 0
    heading: Optional[Union[int, float, str]] = None
    timestamp: Optional[datetime] = None


class TripCreate(_RequestModel):
    """Schema for starting a trip."""
    driver_id: str = Field(..., min_length=1)
    route_id: str = Field(..., min_length=1)
    trip_type: TripType = TripType.OUTBOUND
    child_ids: List[str] = Field(default_factory=list)


class TripFinish(_RequestModel):
    """Schema for finalizing a trip."""
    total_distance: float = Field(0.0, ge=0)
    total_duration_seconds: int = Field(0, ge=0)
    notes: str = ""


_EVENT_TYPE_ALIASES = {
    "boarding": EventType.BOARDING,
    "alighting": EventType.ALIGHTING,
}


class EventCreate(_RequestModel):
    """Schema for recording a boarding or alighting."""
    type: EventType
    child_id: str = Field(..., min_length=1)
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    timestamp: Optional[datetime] = None
    notes: str = ""

    @field_validator("type", mode="before")
    @classmethod
    def accept_english_names(cls, value):
        if isinstance(value, str):
            return _EVENT_TYPE_ALIASES.get(value.lower(), value)
        return value
