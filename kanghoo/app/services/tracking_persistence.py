"""
Tracking Persistence Service.

Owns trip lifecycle, GPS ingestion and boarding/alighting event logs.

Three typed in-memory stores back the service:

* current location per driver (only the latest sample is kept)
* trips by id
* event lists by trip id

Every accepted location is also written to the durable history store when
one is configured. All public operations return a ``ServiceResult`` and
never raise to the caller.
"""

import functools
import json
import logging
import random
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterator, List, Optional, Union

from kanghoo.app.core.exceptions import (
    ErrorKind,
    LocationExpiredError,
    TrackingError,
    TrackingNotFoundError,
    TrackingValidationError,
)
from kanghoo.app.core.scheduler import PeriodicTask
from kanghoo.app.models.tracking_enums import EventType, TripStatus, TripType
from kanghoo.app.schemas.tracking import (
    LocationSample,
    ServiceResult,
    SweepReport,
    TrackingStats,
    Trip,
    TripDetail,
    TripEvent,
    TripStatistics,
)
from kanghoo.app.services.location_history import LocationHistoryStore

logger = logging.getLogger(__name__)

# Demo anchor for simulated history (Sao Paulo)
SIMULATION_BASE_LAT = -23.5505
SIMULATION_BASE_LNG = -46.6333


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def service_operation(name: str):
    """Turn domain errors into a failed ServiceResult at the service boundary."""
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except TrackingError as e:
                logger.info("%s rejected (%s): %s", name, e.kind.value, e)
                return ServiceResult.fail(e.kind, str(e))
            except Exception as e:
                logger.exception("%s failed", name)
                return ServiceResult.fail(ErrorKind.INTERNAL, f"{type(e).__name__}: {e}")
        return wrapper
    return decorator


def _require(value, field: str):
    if value is None or (isinstance(value, str) and not value.strip()):
        raise TrackingValidationError(f"{field} is required")
    return value


def _coordinate(value, field: str, bound: float) -> float:
    _require(value, field)
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise TrackingValidationError(f"{field} must be numeric")
    if not -bound <= number <= bound:
        raise TrackingValidationError(f"{field} must be between -{bound:g} and {bound:g}")
    return number


def _float_or_zero(value) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _int_or_zero(value) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return 0


def _parse_timestamp(value: Union[datetime, str, None], default: datetime) -> datetime:
    if value is None:
        return default
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise TrackingValidationError(f"invalid timestamp: {value!r}")
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


class TrackingPersistenceService:
    """Live and historical trip / location data for drivers."""

    def __init__(
        self,
        history: Optional[LocationHistoryStore] = None,
        *,
        location_timeout_seconds: int = 300,
        finished_trip_retention_seconds: int = 3600,
        sweep_interval_seconds: int = 600,
        history_max_limit: int = 1000,
        simulate_history: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.history = history
        self.location_timeout = timedelta(seconds=location_timeout_seconds)
        self.finished_trip_retention = timedelta(seconds=finished_trip_retention_seconds)
        self.history_max_limit = history_max_limit
        self.simulate_history = simulate_history
        self._clock = clock

        self._locations: Dict[str, LocationSample] = {}
        self._trips: Dict[str, Trip] = {}
        self._events: Dict[str, List[TripEvent]] = {}

        self._sweeper = PeriodicTask("tracking-sweep", sweep_interval_seconds, self.clear_stale_cache)

    # Lifecycle

    def start(self) -> None:
        self._sweeper.start()

    async def shutdown(self) -> None:
        await self._sweeper.stop()

    # Locations

    @service_operation("save_location")
    async def save_location(
        self,
        driver_id: str,
        latitude: float,
        longitude: float,
        route_id: Optional[str] = None,
        speed: Optional[float] = 0,
        heading: Optional[int] = 0,
        timestamp: Union[datetime, str, None] = None,
    ) -> ServiceResult[LocationSample]:
        """
        Store the latest location of a driver.

        Replaces the driver's current location, appends it to the driver's
        active trip and records it in the history store.
        """
        driver_id = str(_require(driver_id, "driver_id"))
        lat = _coordinate(latitude, "latitude", 90)
        lng = _coordinate(longitude, "longitude", 180)
        now = self._clock()

        sample = LocationSample(
            driver_id=driver_id,
            route_id=str(route_id) if route_id is not None else None,
            latitude=lat,
            longitude=lng,
            speed=_float_or_zero(speed),
            heading=_int_or_zero(heading),
            timestamp=_parse_timestamp(timestamp, now),
            cached_at=now,
        )

        self._locations[driver_id] = sample
        trip = self._active_trip_for(driver_id)
        if trip is not None:
            trip.locations.append(sample)

        logger.debug(
            "Location saved for driver %s: lat=%s lng=%s speed=%s at %s",
            driver_id, lat, lng, sample.speed, sample.timestamp.isoformat()
        )

        if self.history is not None:
            try:
                await self.history.record(sample)
            except Exception:
                # The cached copy is already live; history can lag
                logger.warning("History write failed for driver %s", driver_id, exc_info=True)

        return ServiceResult.ok(sample, id=str(uuid.uuid4()))

    @service_operation("get_current_location")
    async def get_current_location(self, driver_id: str) -> ServiceResult[LocationSample]:
        sample = self._locations.get(driver_id)
        if sample is None:
            raise TrackingNotFoundError(f"No location for driver {driver_id}")

        if self._clock() - sample.cached_at > self.location_timeout:
            del self._locations[driver_id]
            raise LocationExpiredError(f"Location for driver {driver_id} expired")

        return ServiceResult.ok(sample)

    @service_operation("get_location_history")
    async def get_location_history(
        self,
        driver_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: int = 100,
    ) -> ServiceResult[List[LocationSample]]:
        """
        Driver samples, most recent first.

        Without stored history the result is empty, unless simulation is
        enabled, in which case a synthetic minute-spaced track is returned.
        """
        _require(driver_id, "driver_id")
        if limit is None or limit < 1:
            raise TrackingValidationError("limit must be a positive integer")
        limit = min(limit, self.history_max_limit)
        start_date = _parse_timestamp(start_date, None)
        end_date = _parse_timestamp(end_date, None)
        if start_date and end_date and start_date > end_date:
            raise TrackingValidationError("start_date must not be after end_date")

        samples: List[LocationSample] = []
        if self.history is not None:
            samples = await self.history.query(driver_id, start_date, end_date, limit)

        if not samples and self.simulate_history:
            samples = list(self._simulated_history(driver_id, limit))

        return ServiceResult.ok(samples, total=len(samples))

    def _simulated_history(self, driver_id: str, limit: int) -> Iterator[LocationSample]:
        now = self._clock()
        anchor = self._locations.get(driver_id)
        base_lat = anchor.latitude if anchor else SIMULATION_BASE_LAT
        base_lng = anchor.longitude if anchor else SIMULATION_BASE_LNG
        rng = random.Random(driver_id)

        for i in range(limit):
            yield LocationSample(
                driver_id=driver_id,
                route_id=anchor.route_id if anchor else None,
                latitude=base_lat + (rng.random() - 0.5) * 0.01,
                longitude=base_lng + (rng.random() - 0.5) * 0.01,
                speed=round(rng.random() * 60, 1),  # 0-60 km/h
                heading=rng.randrange(360),
                timestamp=now - timedelta(minutes=i),
                cached_at=now,
            )

    # Trips

    @service_operation("start_trip")
    async def start_trip(
        self,
        driver_id: str,
        route_id: str,
        trip_type: Union[TripType, str] = TripType.OUTBOUND,
        child_ids: Optional[List[str]] = None,
    ) -> ServiceResult[Trip]:
        driver_id = str(_require(driver_id, "driver_id"))
        route_id = str(_require(route_id, "route_id"))
        try:
            trip_type = TripType(trip_type)
        except ValueError:
            raise TrackingValidationError(f"unknown trip type: {trip_type!r}")

        now = self._clock()
        trip = Trip(
            id=self._new_trip_id(driver_id, now),
            driver_id=driver_id,
            route_id=route_id,
            trip_type=trip_type,
            status=TripStatus.STARTED,
            child_ids=[str(child_id) for child_id in child_ids or []],
            started_at=now,
        )
        self._trips[trip.id] = trip

        logger.debug(
            "Trip started: id=%s driver=%s route=%s type=%s children=%d",
            trip.id, driver_id, route_id, trip_type.value, len(trip.child_ids)
        )
        return ServiceResult.ok(trip, trip_id=trip.id)

    def _new_trip_id(self, driver_id: str, now: datetime) -> str:
        millis = int(now.timestamp() * 1000)
        trip_id = f"trip_{millis}_{driver_id}"
        while trip_id in self._trips:
            millis += 1
            trip_id = f"trip_{millis}_{driver_id}"
        return trip_id

    def _active_trip_for(self, driver_id: str) -> Optional[Trip]:
        active = [
            trip for trip in self._trips.values()
            if trip.driver_id == driver_id and trip.status == TripStatus.STARTED
        ]
        return max(active, key=lambda trip: trip.started_at, default=None)

    def _get_trip(self, trip_id: str) -> Trip:
        trip = self._trips.get(trip_id)
        if trip is None:
            raise TrackingNotFoundError(f"Trip {trip_id} not found")
        return trip

    @service_operation("finalize_trip")
    async def finalize_trip(
        self,
        trip_id: str,
        total_distance: float = 0,
        total_duration_seconds: int = 0,
        notes: str = "",
    ) -> ServiceResult[Trip]:
        trip = self._get_trip(trip_id)
        if trip.status == TripStatus.FINISHED:
            raise TrackingValidationError(f"Trip {trip_id} is already finished")

        trip.ended_at = self._clock()
        trip.status = TripStatus.FINISHED
        trip.total_distance = _float_or_zero(total_distance)
        trip.total_duration_seconds = _int_or_zero(total_duration_seconds)
        trip.notes = notes or ""

        logger.debug(
            "Trip finished: id=%s distance=%s duration=%ss",
            trip_id, trip.total_distance, trip.total_duration_seconds
        )
        return ServiceResult.ok(trip)

    @service_operation("get_trip_data")
    async def get_trip_data(self, trip_id: str) -> ServiceResult[TripDetail]:
        trip = self._get_trip(trip_id)
        events = list(self._events.get(trip_id, []))
        end = trip.ended_at or self._clock()

        detail = TripDetail(
            **trip.model_dump(),
            events=events,
            total_events=len(events),
            statistics=TripStatistics(
                total_events=len(events),
                boardings=sum(1 for e in events if e.event_type == EventType.BOARDING),
                alightings=sum(1 for e in events if e.event_type == EventType.ALIGHTING),
                duration_minutes=round((end - trip.started_at).total_seconds() / 60),
            ),
        )
        return ServiceResult.ok(detail)

    # Events

    async def record_boarding(self, trip_id: str, child_id: str, latitude: float, longitude: float,
                              timestamp: Union[datetime, str, None] = None,
                              notes: str = "") -> ServiceResult[TripEvent]:
        return await self.record_event(EventType.BOARDING, trip_id, child_id, latitude, longitude, timestamp, notes)

    async def record_alighting(self, trip_id: str, child_id: str, latitude: float, longitude: float,
                               timestamp: Union[datetime, str, None] = None,
                               notes: str = "") -> ServiceResult[TripEvent]:
        return await self.record_event(EventType.ALIGHTING, trip_id, child_id, latitude, longitude, timestamp, notes)

    @service_operation("record_event")
    async def record_event(
        self,
        event_type: Union[EventType, str],
        trip_id: str,
        child_id: str,
        latitude: float,
        longitude: float,
        timestamp: Union[datetime, str, None] = None,
        notes: str = "",
    ) -> ServiceResult[TripEvent]:
        trip_id = str(_require(trip_id, "trip_id"))
        child_id = str(_require(child_id, "child_id"))
        try:
            event_type = EventType(event_type)
        except ValueError:
            raise TrackingValidationError(f"unknown event type: {event_type!r}")
        lat = _coordinate(latitude, "latitude", 90)
        lng = _coordinate(longitude, "longitude", 180)

        trip = self._get_trip(trip_id)
        if trip.status != TripStatus.STARTED:
            raise TrackingValidationError(f"Trip {trip_id} is not active")

        event = TripEvent(
            id=str(uuid.uuid4()),
            trip_id=trip_id,
            event_type=event_type,
            child_id=child_id,
            latitude=lat,
            longitude=lng,
            timestamp=_parse_timestamp(timestamp, self._clock()),
            locality=f"{lat}, {lng}",
            notes=notes or "",
        )
        self._events.setdefault(trip_id, []).append(event)

        logger.debug(
            "%s recorded: trip=%s child=%s at %s",
            event_type.name.title(), trip_id, child_id, event.locality
        )
        return ServiceResult.ok(event, event_id=event.id)

    # Maintenance

    @service_operation("clear_stale_cache")
    async def clear_stale_cache(self) -> ServiceResult[SweepReport]:
        """
        Drop expired locations and finished trips past retention.

        Active trips and their events are never swept.
        """
        now = self._clock()
        report = SweepReport()

        for driver_id, sample in list(self._locations.items()):
            if now - sample.cached_at > self.location_timeout:
                del self._locations[driver_id]
                report.locations_removed += 1

        for trip_id, trip in list(self._trips.items()):
            if trip.status != TripStatus.FINISHED or trip.ended_at is None:
                continue
            if now - trip.ended_at > self.finished_trip_retention:
                del self._trips[trip_id]
                report.trips_removed += 1
                if self._events.pop(trip_id, None) is not None:
                    report.event_lists_removed += 1

        report.remaining = len(self._locations) + len(self._trips) + len(self._events)
        logger.debug("Tracking sweep: %s", report.model_dump())
        return ServiceResult.ok(report)

    @service_operation("get_cache_stats")
    async def get_cache_stats(self) -> ServiceResult[TrackingStats]:
        payload = json.dumps({
            "locations": {k: v.model_dump(mode="json") for k, v in self._locations.items()},
            "trips": {k: v.model_dump(mode="json") for k, v in self._trips.items()},
            "events": {k: [e.model_dump(mode="json") for e in v] for k, v in self._events.items()},
        })
        stats = TrackingStats(
            total_items=len(self._locations) + len(self._trips) + len(self._events),
            locations=len(self._locations),
            trips=len(self._trips),
            active_trips=sum(1 for t in self._trips.values() if t.status == TripStatus.STARTED),
            event_lists=len(self._events),
            estimated_kb=round(len(payload.encode("utf-8")) / 1024),
            location_timeout_seconds=int(self.location_timeout.total_seconds()),
            finished_trip_retention_seconds=int(self.finished_trip_retention.total_seconds()),
            generated_at=self._clock(),
        )
        return ServiceResult.ok(stats)
