from pydantic import BaseModel, Field, ConfigDict
from datetime import datetime
from typing import Any, Dict, List, Optional


class FaceEnrollRequest(BaseModel):
    face_embedding: Any = Field(..., description="Embedding as a list of numbers, or as an index-keyed map.")
    consent_given: bool = False


class FaceStatusResponse(BaseModel):
    enrolled: bool
    face_updated_at: Optional[datetime] = None
    consent_given: bool = False
    consent_at: Optional[datetime] = None


class WebAuthnRegistrationRequest(BaseModel):
    credential: Dict[str, Any] = Field(..., description="PublicKeyCredential JSON from navigator.credentials.create().")


class WebAuthnCredentialResponse(BaseModel):
    credential_id: str
    device_type: Optional[str] = None
    transports: List[str] = Field(default_factory=list)
    counter: int
    enrolled_at: Optional[datetime] = None
    last_used: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
