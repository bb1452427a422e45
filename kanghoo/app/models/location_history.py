"""
Location History database model.

Stores every accepted GPS sample so driver history survives restarts.
"""

from sqlalchemy import Column, Integer, Float, String, DateTime
from sqlalchemy.sql import func
from kanghoo.app.db.session import Base


class LocationHistory(Base):
    """
    Location History model.

    One row per GPS sample received for a driver.
    """
    __tablename__ = "location_history"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # References
    driver_id = Column(String(64), nullable=False, index=True)
    route_id = Column(String(64), nullable=True)

    # GPS reading
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    speed = Column(Float, nullable=False, default=0.0)  # km/h
    heading = Column(Integer, nullable=False, default=0)  # degrees

    # Timing
    recorded_at = Column(DateTime(timezone=True), nullable=False, index=True)  # When GPS was captured
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)  # When stored

    def __repr__(self):
        return f"<LocationHistory(driver_id={self.driver_id}, lat={self.latitude}, lng={self.longitude})>"
