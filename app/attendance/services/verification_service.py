import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel

from ..config.config import settings
from ..db.db_client import AsyncPostgresClient
from ..models.db_models import (
    AttendanceSession, Student, AttendanceAttempt, AttendanceRecord,
    AttemptStatus, Factor, FactorFailure
)
from ..models.evidence import EvidenceBundle, FaceSample, BiometricEvidence, LocationEvidence
from ..tools.face_matcher import embedding_distance, is_face_match
from ..tools.geo_verifier import (
    haversine_distance, within_radius, is_valid_coordinate, describe_distance
)
from ..tools.qr_verifier import validate_qr_token
from .attendance_recorder import AttendanceRecorder
from .biometric_service import WebAuthnService
from .errors import ServiceError, UsageError, NotFoundError
from .session_service import is_live

logger = logging.getLogger(__name__)

# Reason used when a factor's collaborator raised instead of answering.
_UNAVAILABLE = {
    Factor.FACE: "Face check could not be completed.",
    Factor.BIOMETRIC: "Biometric check could not be completed.",
    Factor.GEOFENCING: "Location check could not be completed.",
    Factor.QR: "QR check could not be completed.",
}


@dataclass
class GeoTarget:
    latitude: float
    longitude: float
    allowed_radius: float


class VerificationOutcome(BaseModel):
    """What the caller gets back: the decision, a readable message and the full attempt."""
    success: bool
    message: str
    attempt: AttendanceAttempt
    record: Optional[AttendanceRecord] = None
    already_marked: bool = False


def render_failures(failures: List[FactorFailure]) -> str:
    """Joins every failed factor's own sentence, in evaluation order."""
    return " ".join(failure.reason for failure in failures)


class VerificationService:
    """
    Decides one attendance submission.

    Every factor enabled on the session is evaluated, even after another one
    has failed, so the stored attempt and the response describe every problem
    at once. Only a missing or closed session, an unknown student or an
    unconfigured class location stop the pass early; those are usage errors
    and leave no attempt behind.
    """
    def __init__(self,
                 db_client: AsyncPostgresClient,
                 webauthn_service: WebAuthnService,
                 recorder: AttendanceRecorder):
        self.db_client = db_client
        self.webauthn_service = webauthn_service
        self.recorder = recorder

    async def submit_evidence(self,
                              student_id: UUID,
                              evidence: EvidenceBundle,
                              client_ip: Optional[str] = None,
                              now: Optional[datetime] = None) -> VerificationOutcome:
        now = now or datetime.now(timezone.utc)
        session_id = evidence.session_id
        logger.info(f"Student '{student_id}' submitted attendance evidence for session {session_id}.")

        # --- Preconditions ---
        try:
            session = await self.db_client.get_session(session_id)
            if session is None or not is_live(session, now):
                logger.warning(f"Student '{student_id}' submitted to a missing or closed session ({session_id}).")
                raise UsageError("No active session")

            student = await self.db_client.get_student(student_id)
            if student is None:
                raise NotFoundError("Student not found.")

            geo_target = None
            if session.enable_geofencing:
                geo_target = await self._resolve_location(session, student)
                if geo_target is None:
                    raise UsageError("Class location not configured. Contact admin.")
        except ServiceError:
            raise
        except Exception as e:
            logger.error(f"Error loading session {session_id} for verification.", exc_info=True)
            raise ServiceError("A server error occurred while verifying attendance.") from e

        # --- Per-factor evaluation, never short-circuited ---
        attempt = AttendanceAttempt(
            attempt_id=uuid4(),
            session_id=session_id,
            student_id=student_id,
            client_ip=client_ip,
            created_at=now,
        )
        failures: List[FactorFailure] = []

        if session.enable_face:
            await self._evaluate(Factor.FACE, attempt, failures,
                                 lambda: self._check_face(attempt, student_id, evidence.face_data))
        if session.enable_biometric:
            await self._evaluate(Factor.BIOMETRIC, attempt, failures,
                                 lambda: self._check_biometric(attempt, student_id, evidence.biometric_data, now))
        if session.enable_geofencing:
            await self._evaluate(Factor.GEOFENCING, attempt, failures,
                                 lambda: self._check_location(attempt, geo_target, evidence.location))
        if session.qr_enabled:
            await self._evaluate(Factor.QR, attempt, failures,
                                 lambda: self._check_qr(attempt, session_id, evidence.qr_token, now))

        # Zero enabled factors means zero failures: the submission passes.
        success = not failures
        attempt.failures = failures
        attempt.fail_reason = render_failures(failures) or None
        attempt.attempt_status = AttemptStatus.SUCCESS if success else AttemptStatus.FAILED

        # --- Persistence ---
        try:
            await self.db_client.add_attempt(attempt)
        except Exception as e:
            logger.error(f"Error storing attempt {attempt.attempt_id}.", exc_info=True)
            raise ServiceError("A server error occurred while verifying attendance.") from e

        if not success:
            logger.info(f"Attempt {attempt.attempt_id} FAILED: {attempt.fail_reason}")
            return VerificationOutcome(
                success=False,
                message=f"Verification failed: {attempt.fail_reason}",
                attempt=attempt,
            )

        try:
            record, created = await self.recorder.ensure_present(
                session_id=session_id,
                student_id=student_id,
                attempt_id=attempt.attempt_id,
                now=now,
            )
        except ServiceError:
            raise
        except Exception as e:
            logger.error(f"Error writing attendance for attempt {attempt.attempt_id}.", exc_info=True)
            raise ServiceError("A server error occurred while marking attendance.") from e

        logger.info(f"Attempt {attempt.attempt_id} SUCCESS (new record: {created}).")
        return VerificationOutcome(
            success=True,
            message="Attendance marked!" if created else "Attendance already marked.",
            attempt=attempt,
            record=record,
            already_marked=not created,
        )

    async def _evaluate(self,
                        factor: Factor,
                        attempt: AttendanceAttempt,
                        failures: List[FactorFailure],
                        check: Callable[[], Awaitable[List[str]]]):
        """Runs one factor check; an exception fails that factor only."""
        try:
            reasons = await check()
        except Exception:
            logger.error(f"{factor.value} check raised for attempt {attempt.attempt_id}.", exc_info=True)
            _mark_failed(attempt, factor)
            reasons = [_UNAVAILABLE[factor]]
        failures.extend(FactorFailure(factor=factor, reason=reason) for reason in reasons)

    # --- Factor checks: each sets its attempt fields and returns failure reasons ---

    async def _check_face(self, attempt: AttendanceAttempt, student_id: UUID, sample: Optional[FaceSample]) -> List[str]:
        enrollment = await self.db_client.get_biometric(student_id)
        if enrollment is None or not enrollment.face_enrolled or not enrollment.face_embedding:
            attempt.face_verified = False
            return ["Face not enrolled."]
        if sample is None or sample.descriptor is None:
            attempt.face_verified = False
            return ["No face data provided."]

        score = embedding_distance(sample.descriptor, enrollment.face_embedding)
        matched = is_face_match(score, settings.FACE_MATCH_THRESHOLD)
        attempt.face_score = round(score, 3) if math.isfinite(score) else None
        attempt.liveness_verified = sample.liveness is True
        attempt.face_verified = matched and attempt.liveness_verified

        reasons = []
        if not matched:
            if math.isfinite(score):
                reasons.append(f"Face mismatch (Score: {score:.3f}).")
            else:
                reasons.append("Face mismatch (descriptor could not be compared).")
        if not attempt.liveness_verified:
            reasons.append("Liveness failed.")
        return reasons

    async def _check_biometric(self, attempt: AttendanceAttempt, student_id: UUID,
                               evidence: Optional[BiometricEvidence], now: datetime) -> List[str]:
        if evidence is None or not evidence.credential:
            attempt.biometric_verified = False
            return ["No biometric data provided."]

        attempt.biometric_type = "WEBAUTHN"
        result = await self.webauthn_service.verify_for_attendance(student_id, evidence.credential, now)
        attempt.biometric_verified = result.verified
        if not result.verified:
            return [f"Biometric check failed. {result.reason}" if result.reason else "Biometric check failed."]
        return []

    async def _check_location(self, attempt: AttendanceAttempt, target: GeoTarget,
                              location: Optional[LocationEvidence]) -> List[str]:
        if location is None or location.latitude is None or location.longitude is None:
            attempt.location_verified = False
            return ["No location data provided."]
        if not is_valid_coordinate(location.latitude, location.longitude):
            attempt.location_verified = False
            return ["Invalid location data provided."]

        attempt.student_lat = location.latitude
        attempt.student_lng = location.longitude
        distance = haversine_distance(target.latitude, target.longitude, location.latitude, location.longitude)
        verified = within_radius(distance, target.allowed_radius)
        attempt.location_verified = verified
        attempt.location_distance_m = round(distance)
        if not verified:
            return [f"Out of location bounds. {describe_distance(distance, target.allowed_radius)}."]
        return []

    async def _check_qr(self, attempt: AttendanceAttempt, session_id: UUID,
                        token: Optional[str], now: datetime) -> List[str]:
        attempt.qr_token = token
        if not token:
            attempt.qr_valid = False
            return ["No QR token provided."]
        check = await validate_qr_token(self.db_client, session_id, token, now)
        attempt.qr_valid = check.valid
        return [] if check.valid else [check.reason]

    async def _resolve_location(self, session: AttendanceSession, student: Student) -> Optional[GeoTarget]:
        """
        Session override first, then the class of the session, then the
        student's home class.
        """
        if session.expected_lat is not None and session.expected_lng is not None:
            return GeoTarget(
                latitude=session.expected_lat,
                longitude=session.expected_lng,
                allowed_radius=session.allowed_radius_m or settings.DEFAULT_ALLOWED_RADIUS_M,
            )
        for class_id in (session.class_id, student.class_id):
            if class_id is None:
                continue
            classroom = await self.db_client.get_class(class_id)
            if classroom is not None and classroom.location_configured:
                return GeoTarget(
                    latitude=classroom.latitude,
                    longitude=classroom.longitude,
                    allowed_radius=classroom.allowed_radius or settings.DEFAULT_ALLOWED_RADIUS_M,
                )
        return None


def _mark_failed(attempt: AttendanceAttempt, factor: Factor):
    if factor == Factor.FACE:
        attempt.face_verified = False
    elif factor == Factor.BIOMETRIC:
        attempt.biometric_verified = False
    elif factor == Factor.GEOFENCING:
        attempt.location_verified = False
    elif factor == Factor.QR:
        attempt.qr_valid = False
