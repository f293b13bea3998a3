from fastapi import APIRouter, Depends, HTTPException, status, Response, Request
from typing import List
from uuid import UUID

import asyncpg

from ..services.errors import ServiceError
from ..services.session_service import SessionService
from ..services.attendance_recorder import AttendanceRecorder
from ..models.db_models import User, AttendanceSession, FactorConfig
from .schemas.session import (
    SessionCreateRequest,
    SessionResponse,
    SessionStartResponse,
    QRTokenResponse
)
from .schemas.attendance import (
    AttemptResponse,
    AttendanceRecordResponse,
    ManualMarkRequest,
    ManualMarkResponse
)
from .auth import get_current_user
from .dependencies import get_session_service, get_attendance_recorder
from .utilities.errors import to_http_exception
from .utilities.limiter import limiter

router = APIRouter(prefix="/teacher", tags=["Teacher Endpoints"])

# --- Helpers ---

def _verify_teacher_role(user: User):
    if "Teacher" not in user.role:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="This operation is only valid for teachers.")

async def _get_and_verify_owner(session_id: UUID, user: User, service: SessionService) -> AttendanceSession:
    try:
        return await service.get_owned_session(user.user_id, session_id)
    except ServiceError as e:
        raise to_http_exception(e)

# === Session lifecycle ===

@router.post("/sessions", response_model=SessionStartResponse, status_code=status.HTTP_201_CREATED, summary="Start an attendance session, or reuse the live one of this lecture")
@limiter.limit("10/minute")
async def start_session(request: Request, response: Response, create_request: SessionCreateRequest, user: User = Depends(get_current_user), service: SessionService = Depends(get_session_service)):
    _verify_teacher_role(user)
    try:
        session, reused, qr = await service.start_or_reuse(
            teacher_id=user.user_id,
            teacher_subject_id=create_request.teacher_subject_id,
            starts_at=create_request.starts_at,
            ends_at=create_request.ends_at,
            factors=create_request.factors,
            session_type=create_request.session_type,
            room_label=create_request.room_label,
            expected_lat=create_request.expected_lat,
            expected_lng=create_request.expected_lng,
            allowed_radius_m=create_request.allowed_radius_m,
        )
    except ServiceError as e:
        raise to_http_exception(e)
    if reused:
        response.status_code = status.HTTP_200_OK
    return SessionStartResponse(
        session=SessionResponse.model_validate(session.model_dump()),
        reused=reused,
        qr=QRTokenResponse.model_validate(qr.model_dump()) if qr else None
    )

@router.patch("/sessions/{session_id}/factors", response_model=SessionResponse, summary="Toggle the verification factors of a session")
@limiter.limit("30/minute")
async def update_session_factors(request: Request, session_id: UUID, factors: FactorConfig, user: User = Depends(get_current_user), service: SessionService = Depends(get_session_service)):
    _verify_teacher_role(user)
    try:
        updated = await service.update_factors(user.user_id, session_id, factors)
    except ServiceError as e:
        raise to_http_exception(e)
    return SessionResponse.model_validate(updated.model_dump())

@router.post("/sessions/{session_id}/qr/refresh", response_model=QRTokenResponse, summary="Get the QR token to display now")
@limiter.limit("20/minute")
async def refresh_qr_token(request: Request, session_id: UUID, user: User = Depends(get_current_user), service: SessionService = Depends(get_session_service)):
    _verify_teacher_role(user)
    try:
        qr = await service.refresh_qr_token(user.user_id, session_id)
    except ServiceError as e:
        raise to_http_exception(e)
    return QRTokenResponse.model_validate(qr.model_dump())

@router.post("/sessions/{session_id}/close", status_code=status.HTTP_204_NO_CONTENT, summary="Close an attendance session")
@limiter.limit("10/minute")
async def close_session(request: Request, session_id: UUID, user: User = Depends(get_current_user), service: SessionService = Depends(get_session_service)):
    _verify_teacher_role(user)
    try:
        await service.close_session(user.user_id, session_id)
    except ServiceError as e:
        raise to_http_exception(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)

# === Records & attempts ===

@router.get("/sessions/{session_id}/records", response_model=List[AttendanceRecordResponse], summary="Get all attendance records of a session")
@limiter.limit("60/minute")
async def get_session_records(request: Request, session_id: UUID, user: User = Depends(get_current_user), service: SessionService = Depends(get_session_service)):
    _verify_teacher_role(user)
    try:
        records = await service.get_session_records(user.user_id, session_id)
    except ServiceError as e:
        raise to_http_exception(e)
    return [AttendanceRecordResponse.model_validate(r.model_dump()) for r in records]

@router.get("/sessions/{session_id}/attempts", response_model=List[AttemptResponse], summary="Get every verification attempt of a session")
@limiter.limit("60/minute")
async def get_session_attempts(request: Request, session_id: UUID, user: User = Depends(get_current_user), service: SessionService = Depends(get_session_service)):
    _verify_teacher_role(user)
    try:
        attempts = await service.get_session_attempts(user.user_id, session_id)
    except ServiceError as e:
        raise to_http_exception(e)
    return [AttemptResponse.model_validate(a.model_dump()) for a in attempts]

@router.post("/sessions/{session_id}/records", response_model=ManualMarkResponse, status_code=status.HTTP_201_CREATED, summary="Manually mark a student in a session")
@limiter.limit("200/minute")
async def mark_student_manually(request: Request, response: Response, session_id: UUID, mark_request: ManualMarkRequest, user: User = Depends(get_current_user), service: SessionService = Depends(get_session_service), recorder: AttendanceRecorder = Depends(get_attendance_recorder)):
    """
    Goes through the same one-record-per-student rule as verified
    submissions: an existing record is returned as is, with 200.
    """
    _verify_teacher_role(user)
    await _get_and_verify_owner(session_id, user, service)
    try:
        record, created = await recorder.ensure_present(
            session_id=session_id,
            student_id=mark_request.student_id,
            status=mark_request.status,
            verification_method="MANUAL",
            marked_by_teacher_id=user.user_id,
        )
    except asyncpg.ForeignKeyViolationError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Student not found.")
    except ServiceError as e:
        raise to_http_exception(e)
    if not created:
        response.status_code = status.HTTP_200_OK
    return ManualMarkResponse(created=created, record=AttendanceRecordResponse.model_validate(record.model_dump()))
