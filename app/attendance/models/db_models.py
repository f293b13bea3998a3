# app/attendance/models/db_models.py

from pydantic import BaseModel, Field
from datetime import datetime
from enum import Enum
from typing import List, Optional
from uuid import UUID


class User(BaseModel):
    """
    The authenticated caller, as carried in the JWT.
    For students `user_id` is the student_id; for teachers it is the teacher_id.
    """
    user_id: UUID = Field(..., description="Student or teacher identifier")
    role: str = Field(..., description="Can be Student, Teacher, Admin")


class ClassRoom(BaseModel):
    """
    Represents a class (cohort), mapping to the 'Classes' table.
    The location columns are nullable; a class without them is not configured for geofencing.
    """
    class_id: UUID
    name: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    allowed_radius: Optional[float] = None
    room_label: Optional[str] = None

    @property
    def location_configured(self) -> bool:
        return self.latitude is not None and self.longitude is not None


class Student(BaseModel):
    """Represents a student, mapping to the 'Students' table."""
    student_id: UUID
    full_name: str
    roll_no: str
    class_id: Optional[UUID] = Field(None, description="FK to the student's home class")


class TeacherSubject(BaseModel):
    """A teaching assignment: who teaches which subject to which class."""
    teacher_subject_id: UUID
    teacher_id: UUID
    subject_id: UUID
    class_id: UUID


class SessionType(str, Enum):
    LECTURE = "LECTURE"
    LAB = "LAB"
    EXAM = "EXAM"


class FactorConfig(BaseModel):
    """The independently toggleable verification factors of a session."""
    enable_geofencing: bool = False
    enable_face: bool = False
    enable_biometric: bool = False
    enable_static_qr: bool = False
    enable_dynamic_qr: bool = False

    @property
    def qr_enabled(self) -> bool:
        return self.enable_static_qr or self.enable_dynamic_qr


class AttendanceSession(FactorConfig):
    """
    One scheduled attendance window, mapping to the 'AttendanceSessions' table.
    """
    session_id: UUID = Field(..., description="Unique identifier for the attendance session")
    teacher_subject_id: UUID = Field(..., description="FK to the teaching assignment")
    class_id: Optional[UUID] = Field(None, description="Class of the teaching assignment, copied at creation")
    session_type: SessionType = SessionType.LECTURE
    starts_at: datetime
    ends_at: datetime
    is_active: bool = True
    room_label: Optional[str] = None
    expected_lat: Optional[float] = None
    expected_lng: Optional[float] = None
    allowed_radius_m: Optional[float] = None
    created_at: Optional[datetime] = None

    @property
    def factors(self) -> FactorConfig:
        return FactorConfig(**self.model_dump(include=set(FactorConfig.model_fields)))


class SessionQRToken(BaseModel):
    """A rotating (or static) QR credential of one session. Never updated after insert."""
    token: str
    session_id: UUID
    valid_from: datetime
    valid_until: datetime
    created_at: Optional[datetime] = None


class StudentBiometric(BaseModel):
    """
    Face enrollment of a student, mapping to the 'StudentBiometrics' table.
    Deleting an enrollment clears the embedding and flag but keeps the row.
    """
    student_id: UUID
    face_enrolled: bool = False
    face_embedding: Optional[List[float]] = None
    face_updated_at: Optional[datetime] = None
    consent_given: bool = False
    consent_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None


class WebAuthnCredential(BaseModel):
    """A platform authenticator credential. A student may own several."""
    credential_id: str = Field(..., description="base64url credential id, unique")
    student_id: UUID
    public_key: str = Field(..., description="base64url COSE public key")
    counter: int = 0
    device_type: Optional[str] = None
    transports: List[str] = Field(default_factory=list)
    is_active: bool = True
    enrolled_at: Optional[datetime] = None
    last_used: Optional[datetime] = None


class AttemptStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    # Reserved for anomaly detection; nothing produces it yet.
    FLAGGED = "FLAGGED"


class Factor(str, Enum):
    FACE = "FACE"
    BIOMETRIC = "BIOMETRIC"
    GEOFENCING = "GEOFENCING"
    QR = "QR"


class FactorFailure(BaseModel):
    """One failed sub-check of an attempt."""
    factor: Factor
    reason: str


class AttendanceAttempt(BaseModel):
    """
    The audit row of one verification submission, mapping to the
    'AttendanceAttempts' table. Inserted once, never updated.
    Per-factor fields stay None for factors the session does not enable.
    """
    attempt_id: UUID
    session_id: UUID
    student_id: UUID
    qr_token: Optional[str] = None
    qr_valid: Optional[bool] = None
    face_verified: Optional[bool] = None
    face_score: Optional[float] = None
    liveness_verified: Optional[bool] = None
    biometric_verified: Optional[bool] = None
    biometric_type: Optional[str] = None
    location_verified: Optional[bool] = None
    location_distance_m: Optional[int] = None
    student_lat: Optional[float] = None
    student_lng: Optional[float] = None
    client_ip: Optional[str] = None
    attempt_status: AttemptStatus = AttemptStatus.FAILED
    failures: List[FactorFailure] = Field(default_factory=list)
    fail_reason: Optional[str] = None
    created_at: Optional[datetime] = None


class RecordStatus(str, Enum):
    PRESENT = "PRESENT"
    ABSENT = "ABSENT"
    LATE = "LATE"
    EXCUSED = "EXCUSED"
    REJECTED = "REJECTED"


class AttendanceRecord(BaseModel):
    """
    The authoritative presence fact, mapping to the 'AttendanceRecords' table.
    (session_id, student_id) is unique.
    """
    record_id: UUID
    session_id: UUID = Field(..., description="FK linking to the attendance session")
    student_id: UUID = Field(..., description="FK linking to the student")
    status: RecordStatus = RecordStatus.PRESENT
    marked_at: datetime
    source_attempt_id: Optional[UUID] = None
    verification_method: str = "MULTI_FACTOR"
    marked_by_teacher_id: Optional[UUID] = None
