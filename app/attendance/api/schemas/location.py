from pydantic import BaseModel, Field, ConfigDict
from uuid import UUID
from typing import Optional


class LocationVerifyRequest(BaseModel):
    class_id: UUID
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class LocationVerifyResponse(BaseModel):
    verified: bool
    distance: float = Field(description="Meters from the class location, two decimals.")
    allowed_radius: float
    room_label: Optional[str] = None
    message: str

    model_config = ConfigDict(from_attributes=True)


class ClassLocationResponse(BaseModel):
    class_id: UUID
    name: str
    location_configured: bool
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    allowed_radius: Optional[float] = None
    room_label: Optional[str] = None
