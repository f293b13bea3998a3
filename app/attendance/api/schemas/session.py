from pydantic import BaseModel, Field, ConfigDict, model_validator
from uuid import UUID
from datetime import datetime
from typing import Optional

from ...models.db_models import FactorConfig, SessionType


class SessionCreateRequest(BaseModel):
    """Request model for starting (or reusing) an attendance session."""
    teacher_subject_id: UUID = Field(..., description="The teaching assignment the lecture belongs to.")
    starts_at: datetime
    ends_at: datetime
    session_type: SessionType = SessionType.LECTURE
    factors: FactorConfig = Field(default_factory=FactorConfig)
    room_label: Optional[str] = None
    expected_lat: Optional[float] = Field(None, ge=-90, le=90, description="Overrides the class location.")
    expected_lng: Optional[float] = Field(None, ge=-180, le=180, description="Overrides the class location.")
    allowed_radius_m: Optional[float] = Field(None, gt=0)

    @model_validator(mode="after")
    def check_window(self):
        if self.ends_at < self.starts_at:
            raise ValueError("ends_at must not be earlier than starts_at.")
        if (self.expected_lat is None) != (self.expected_lng is None):
            raise ValueError("expected_lat and expected_lng must be given together.")
        return self


class QRTokenResponse(BaseModel):
    session_id: UUID
    token: str
    valid_until: datetime
    qr_code: str = Field(description="PNG data URL of the QR payload.")

    model_config = ConfigDict(from_attributes=True)


class SessionResponse(FactorConfig):
    """Response model for an attendance session."""
    session_id: UUID
    teacher_subject_id: UUID
    class_id: Optional[UUID] = None
    session_type: SessionType
    starts_at: datetime
    ends_at: datetime
    is_active: bool
    room_label: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class SessionStartResponse(BaseModel):
    session: SessionResponse
    reused: bool
    qr: Optional[QRTokenResponse] = None
