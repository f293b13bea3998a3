import logging
from typing import Optional
from uuid import UUID

from pydantic import BaseModel

from ..config.config import settings
from ..db.db_client import AsyncPostgresClient
from ..models.db_models import ClassRoom
from ..tools.geo_verifier import haversine_distance, within_radius, describe_distance
from .errors import UsageError, NotFoundError

logger = logging.getLogger(__name__)


class LocationCheck(BaseModel):
    verified: bool
    distance: float
    allowed_radius: float
    room_label: Optional[str] = None
    message: str


class LocationService:
    """Standalone geofence check against a class location, ahead of a submission."""

    def __init__(self, db_client: AsyncPostgresClient):
        self.db_client = db_client

    async def get_class_location(self, class_id: UUID) -> ClassRoom:
        classroom = await self.db_client.get_class(class_id)
        if classroom is None:
            raise NotFoundError("Class not found")
        return classroom

    async def verify(self, class_id: UUID, latitude: float, longitude: float) -> LocationCheck:
        classroom = await self.get_class_location(class_id)
        if not classroom.location_configured:
            raise UsageError("Class location not configured. Contact admin.")

        allowed_radius = classroom.allowed_radius or settings.DEFAULT_ALLOWED_RADIUS_M
        distance = haversine_distance(classroom.latitude, classroom.longitude, latitude, longitude)
        verified = within_radius(distance, allowed_radius)
        logger.info(f"Location check for class {class_id}: {distance:.2f}m (max {allowed_radius}m), verified={verified}.")
        return LocationCheck(
            verified=verified,
            distance=round(distance, 2),
            allowed_radius=allowed_radius,
            room_label=classroom.room_label,
            message="Location verified" if verified else describe_distance(distance, allowed_radius),
        )
