from fastapi import APIRouter, Depends, HTTPException, status, Request, Response
from fastapi.responses import JSONResponse
from typing import Any, Dict, List, Optional
from uuid import UUID

from ..services.errors import ServiceError
from ..services.session_service import SessionService
from ..services.verification_service import VerificationService
from ..services.biometric_service import FaceEnrollmentService, WebAuthnService
from ..services.location_service import LocationService
from ..models.db_models import User
from ..models.evidence import EvidenceBundle
from .schemas.attendance import AttemptResponse, SubmitResponse
from .schemas.session import SessionResponse
from .schemas.biometric import (
    FaceEnrollRequest,
    FaceStatusResponse,
    WebAuthnRegistrationRequest,
    WebAuthnCredentialResponse
)
from .schemas.location import LocationVerifyRequest, LocationVerifyResponse, ClassLocationResponse

from .auth import get_current_user
from .dependencies import (
    get_session_service,
    get_verification_service,
    get_face_enrollment_service,
    get_webauthn_service,
    get_location_service,
    get_client_ip
)
from .utilities.errors import to_http_exception
from .utilities.limiter import limiter

router = APIRouter(prefix="/student", tags=["Student Endpoints"])


def _verify_student_role(user: User):
    """Helper function to verify the current user is a student."""
    if "Student" not in user.role:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="This operation is only valid for students."
        )

# === Sessions & attendance ===

@router.get(
    "/sessions/active",
    response_model=SessionResponse,
    summary="Get the live attendance session of my class"
)
@limiter.limit("30/minute")
async def get_active_session(
    request: Request,
    user: User = Depends(get_current_user),
    service: SessionService = Depends(get_session_service)
):
    _verify_student_role(user)
    try:
        return await service.get_active_session_for_student(user.user_id)
    except ServiceError as e:
        raise to_http_exception(e)


@router.post(
    "/attendance/submit",
    response_model=SubmitResponse,
    summary="Submit verification evidence for a live session"
)
@limiter.limit("10/minute")
async def submit_attendance(
    request: Request,
    evidence: EvidenceBundle,
    user: User = Depends(get_current_user),
    service: VerificationService = Depends(get_verification_service),
    client_ip: Optional[str] = Depends(get_client_ip)
):
    """
    Evaluates every factor enabled on the session and returns the stored
    attempt as `details`. A verification failure answers 400 with the same
    body shape as a success; the message names every failed factor.
    """
    _verify_student_role(user)
    try:
        outcome = await service.submit_evidence(
            student_id=user.user_id,
            evidence=evidence,
            client_ip=client_ip
        )
    except ServiceError as e:
        # Preconditions, unknown student included, are plain usage errors here.
        raise to_http_exception(e, not_found_status=status.HTTP_400_BAD_REQUEST)

    body = SubmitResponse(
        success=outcome.success,
        message=outcome.message,
        details=AttemptResponse.model_validate(outcome.attempt)
    )
    if not outcome.success:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=body.model_dump(mode="json"))
    return body

# === Location ===

@router.post(
    "/location/verify",
    response_model=LocationVerifyResponse,
    summary="Check whether a position is inside a class geofence"
)
@limiter.limit("30/minute")
async def verify_location(
    request: Request,
    location_request: LocationVerifyRequest,
    user: User = Depends(get_current_user),
    service: LocationService = Depends(get_location_service)
):
    _verify_student_role(user)
    try:
        return await service.verify(
            class_id=location_request.class_id,
            latitude=location_request.latitude,
            longitude=location_request.longitude
        )
    except ServiceError as e:
        raise to_http_exception(e)


@router.get(
    "/classes/{class_id}/location",
    response_model=ClassLocationResponse,
    summary="Get the configured location of a class"
)
@limiter.limit("30/minute")
async def get_class_location(
    request: Request,
    class_id: UUID,
    user: User = Depends(get_current_user),
    service: LocationService = Depends(get_location_service)
):
    _verify_student_role(user)
    try:
        classroom = await service.get_class_location(class_id)
    except ServiceError as e:
        raise to_http_exception(e)
    return ClassLocationResponse(
        **classroom.model_dump(),
        location_configured=classroom.location_configured
    )

# === Face enrollment ===

@router.post(
    "/biometrics/face",
    response_model=FaceStatusResponse,
    summary="Enroll or replace my face embedding"
)
@limiter.limit("5/minute")
async def enroll_face(
    request: Request,
    enroll_request: FaceEnrollRequest,
    user: User = Depends(get_current_user),
    service: FaceEnrollmentService = Depends(get_face_enrollment_service)
):
    _verify_student_role(user)
    try:
        enrollment = await service.enroll(
            student_id=user.user_id,
            face_embedding=enroll_request.face_embedding,
            consent_given=enroll_request.consent_given
        )
    except ServiceError as e:
        raise to_http_exception(e)
    return FaceStatusResponse(
        enrolled=enrollment.face_enrolled,
        face_updated_at=enrollment.face_updated_at,
        consent_given=enrollment.consent_given,
        consent_at=enrollment.consent_at
    )


@router.get(
    "/biometrics/face",
    response_model=FaceStatusResponse,
    summary="Get my face enrollment status"
)
@limiter.limit("30/minute")
async def get_face_status(
    request: Request,
    user: User = Depends(get_current_user),
    service: FaceEnrollmentService = Depends(get_face_enrollment_service)
):
    _verify_student_role(user)
    enrollment = await service.get_status(user.user_id)
    if enrollment is None:
        return FaceStatusResponse(enrolled=False)
    return FaceStatusResponse(
        enrolled=enrollment.face_enrolled,
        face_updated_at=enrollment.face_updated_at,
        consent_given=enrollment.consent_given,
        consent_at=enrollment.consent_at
    )


@router.delete(
    "/biometrics/face",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete my face enrollment"
)
@limiter.limit("5/minute")
async def delete_face_enrollment(
    request: Request,
    user: User = Depends(get_current_user),
    service: FaceEnrollmentService = Depends(get_face_enrollment_service)
):
    _verify_student_role(user)
    try:
        await service.delete(user.user_id)
    except ServiceError as e:
        raise to_http_exception(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)

# === WebAuthn ===

@router.post("/webauthn/register/options", summary="Begin registering a platform authenticator")
@limiter.limit("10/minute")
async def webauthn_registration_options(
    request: Request,
    user: User = Depends(get_current_user),
    service: WebAuthnService = Depends(get_webauthn_service)
) -> Dict[str, Any]:
    _verify_student_role(user)
    try:
        return await service.registration_options(user.user_id)
    except ServiceError as e:
        raise to_http_exception(e)


@router.post(
    "/webauthn/register/verify",
    response_model=WebAuthnCredentialResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Finish registering a platform authenticator"
)
@limiter.limit("10/minute")
async def webauthn_registration_verify(
    request: Request,
    registration: WebAuthnRegistrationRequest,
    user: User = Depends(get_current_user),
    service: WebAuthnService = Depends(get_webauthn_service)
):
    _verify_student_role(user)
    try:
        return await service.verify_registration(user.user_id, registration.credential)
    except ServiceError as e:
        raise to_http_exception(e)


@router.post("/webauthn/authenticate/options", summary="Get an assertion challenge for attendance")
@limiter.limit("20/minute")
async def webauthn_authentication_options(
    request: Request,
    user: User = Depends(get_current_user),
    service: WebAuthnService = Depends(get_webauthn_service)
) -> Dict[str, Any]:
    _verify_student_role(user)
    try:
        return await service.authentication_options(user.user_id)
    except ServiceError as e:
        raise to_http_exception(e)


@router.get(
    "/webauthn/credentials",
    response_model=List[WebAuthnCredentialResponse],
    summary="List my registered authenticators"
)
@limiter.limit("30/minute")
async def list_webauthn_credentials(
    request: Request,
    user: User = Depends(get_current_user),
    service: WebAuthnService = Depends(get_webauthn_service)
):
    _verify_student_role(user)
    return await service.list_credentials(user.user_id)


@router.delete(
    "/webauthn/credentials/{credential_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Deactivate one of my authenticators"
)
@limiter.limit("10/minute")
async def remove_webauthn_credential(
    request: Request,
    credential_id: str,
    user: User = Depends(get_current_user),
    service: WebAuthnService = Depends(get_webauthn_service)
):
    _verify_student_role(user)
    try:
        await service.remove_credential(user.user_id, credential_id)
    except ServiceError as e:
        raise to_http_exception(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
