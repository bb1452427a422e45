"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from kanghoo.app.api.v1.endpoints import drivers, locations, tracking_ops, trips

router = APIRouter()

# Location ingestion
router.include_router(locations.router)

# Driver position and history
router.include_router(drivers.router)

# Trip lifecycle and boarding events
router.include_router(trips.router)

# Stats and maintenance
router.include_router(tracking_ops.router)
