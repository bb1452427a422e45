"""
Location History Store.

Durable, queryable record of driver GPS samples backed by SQLAlchemy.
"""

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kanghoo.app.models.location_history import LocationHistory
from kanghoo.app.schemas.tracking import LocationSample


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo; everything stored here is UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class LocationHistoryStore:
    """Reads and writes the ``location_history`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def record(self, sample: LocationSample) -> int:
        """Persist one sample and return its row id."""
        row = LocationHistory(
            driver_id=sample.driver_id,
            route_id=sample.route_id,
            latitude=sample.latitude,
            longitude=sample.longitude,
            speed=sample.speed,
            heading=sample.heading,
            recorded_at=sample.timestamp,
            created_at=sample.cached_at,
        )
        async with self._session_factory() as session:
            session.add(row)
            await session.commit()
            return row.id

    async def query(
        self,
        driver_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[LocationSample]:
        """Most recent samples first, optionally bounded by [start, end]."""
        stmt = select(LocationHistory).where(LocationHistory.driver_id == driver_id)
        if start is not None:
            stmt = stmt.where(LocationHistory.recorded_at >= start)
        if end is not None:
            stmt = stmt.where(LocationHistory.recorded_at <= end)
        stmt = stmt.order_by(LocationHistory.recorded_at.desc(), LocationHistory.id.desc()).limit(limit)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            rows = result.scalars().all()

        return [
            LocationSample(
                driver_id=row.driver_id,
                route_id=row.route_id,
                latitude=row.latitude,
                longitude=row.longitude,
                speed=row.speed,
                heading=row.heading,
                timestamp=_as_utc(row.recorded_at),
                cached_at=_as_utc(row.created_at),
            )
            for row in rows
        ]

