from pydantic import BaseModel, Field, ConfigDict
from uuid import UUID
from datetime import datetime
from typing import List, Optional

from ...models.db_models import AttemptStatus, FactorFailure, RecordStatus


class AttemptResponse(BaseModel):
    """The stored attempt, returned as the `details` of a submission."""
    attempt_id: UUID
    session_id: UUID
    student_id: UUID
    qr_valid: Optional[bool] = None
    face_verified: Optional[bool] = None
    face_score: Optional[float] = None
    liveness_verified: Optional[bool] = None
    biometric_verified: Optional[bool] = None
    biometric_type: Optional[str] = None
    location_verified: Optional[bool] = None
    location_distance_m: Optional[int] = None
    attempt_status: AttemptStatus
    failures: List[FactorFailure] = Field(default_factory=list)
    fail_reason: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class SubmitResponse(BaseModel):
    success: bool
    message: str
    details: AttemptResponse


class AttendanceRecordResponse(BaseModel):
    record_id: UUID
    session_id: UUID
    student_id: UUID
    status: RecordStatus
    marked_at: datetime
    source_attempt_id: Optional[UUID] = None
    verification_method: str
    marked_by_teacher_id: Optional[UUID] = None

    model_config = ConfigDict(from_attributes=True)


class ManualMarkRequest(BaseModel):
    """A teacher marking a student by hand, bypassing the factors."""
    student_id: UUID
    status: RecordStatus = Field(RecordStatus.PRESENT, description="Status written if the student has no record yet.")


class ManualMarkResponse(BaseModel):
    created: bool = Field(description="False when the student already had a record; the existing one is returned.")
    record: AttendanceRecordResponse
