from pydantic import BaseModel, Field
from datetime import datetime
from uuid import UUID


class WebAuthnChallengeRedis(BaseModel):
    """
    A pending WebAuthn challenge for one student. Lives in Redis with a TTL
    and is deleted as soon as a ceremony consumes it.
    """
    student_id: UUID
    challenge: str = Field(..., description="base64url encoded challenge bytes")
    purpose: str = Field(..., description="'registration' or 'authentication'")
    issued_at: datetime


class ActiveQRRedis(BaseModel):
    """
    The QR token currently displayed for a session. The key expires after the
    refresh interval, which is what makes refresh calls within one interval
    return the same token.
    """
    session_id: UUID
    teacher_id: UUID
    token: str
    valid_until: datetime
    issued_at: datetime
