from pydantic import BaseModel, Field
from typing import Any, Dict, Optional
from uuid import UUID


class FaceSample(BaseModel):
    """A face descriptor captured on the client, with the client's liveness claim."""
    descriptor: Optional[Any] = Field(None, description="Embedding as a list, or as an index-keyed map")
    liveness: Any = Field(False, description="Client liveness claim; only a JSON true counts as live")


class BiometricEvidence(BaseModel):
    """The browser's WebAuthn assertion (PublicKeyCredential JSON)."""
    credential: Optional[Dict[str, Any]] = None


class LocationEvidence(BaseModel):
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    accuracy: Optional[float] = Field(None, description="Reported GPS accuracy in meters; informational")


class EvidenceBundle(BaseModel):
    """Everything a student may submit for one attendance attempt. Every part is optional."""
    session_id: UUID
    face_data: Optional[FaceSample] = None
    biometric_data: Optional[BiometricEvidence] = None
    location: Optional[LocationEvidence] = None
    qr_token: Optional[str] = None
