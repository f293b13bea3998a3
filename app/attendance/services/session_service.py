import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple
from uuid import UUID, uuid4

from pydantic import BaseModel

from ..config.config import settings
from ..db.db_client import AsyncPostgresClient
from ..db.redis_client import RedisClient
from ..models.db_models import (
    AttendanceSession, FactorConfig, SessionType, SessionQRToken,
    AttendanceAttempt, AttendanceRecord
)
from ..models.redis_models import ActiveQRRedis
from ..tools.qr_verifier import new_qr_token, render_qr_data_url
from .errors import ServiceError, UsageError, NotFoundError, AuthorizationError

logger = logging.getLogger(__name__)


def is_live(session: AttendanceSession, now: datetime) -> bool:
    """A session accepts submissions only while active and inside its window."""
    return session.is_active and session.starts_at <= now <= session.ends_at


class QRTokenIssue(BaseModel):
    """A QR token ready to be displayed by the teacher's screen."""
    session_id: UUID
    token: str
    valid_until: datetime
    qr_code: str


class SessionService:
    """
    Session lifecycle: start or reuse a lecture's attendance window, toggle its
    factors, rotate its QR token and close it.
    """
    def __init__(self, db_client: AsyncPostgresClient, redis_client: RedisClient):
        self.db_client = db_client
        self.redis_client = redis_client

    async def get_owned_session(self, teacher_id: UUID, session_id: UUID) -> AttendanceSession:
        session = await self.db_client.get_session(session_id)
        if session is None:
            raise AuthorizationError("Session not found or you are not authorized to access it.")
        assignment = await self.db_client.get_teacher_subject(session.teacher_subject_id)
        if assignment is None or assignment.teacher_id != teacher_id:
            raise AuthorizationError("Session not found or you are not authorized to access it.")
        return session

    async def start_or_reuse(self,
                             teacher_id: UUID,
                             teacher_subject_id: UUID,
                             starts_at: datetime,
                             ends_at: datetime,
                             factors: FactorConfig,
                             session_type: SessionType = SessionType.LECTURE,
                             room_label: Optional[str] = None,
                             expected_lat: Optional[float] = None,
                             expected_lng: Optional[float] = None,
                             allowed_radius_m: Optional[float] = None,
                             now: Optional[datetime] = None
                             ) -> Tuple[AttendanceSession, bool, Optional[QRTokenIssue]]:
        """
        Returns (session, reused, qr). An active session of the same teaching
        assignment whose window contains `now` is reused, with the supplied
        factor configuration applied to it; otherwise a new session is created.
        """
        now = now or datetime.now(timezone.utc)
        if ends_at < starts_at:
            raise UsageError("ends_at must not be earlier than starts_at.")

        assignment = await self.db_client.get_teacher_subject(teacher_subject_id)
        if assignment is None:
            raise NotFoundError("Teaching assignment not found.")
        if assignment.teacher_id != teacher_id:
            logger.warning(f"Teacher '{teacher_id}' tried to start a session for assignment {teacher_subject_id} they do not own.")
            raise AuthorizationError("You are not assigned to this subject.")

        try:
            existing = await self.db_client.find_live_session_for_assignment(teacher_subject_id, now)
            reused = existing is not None
            if existing is not None:
                session = existing
                if session.factors != factors:
                    session = await self.db_client.update_session_factors(session.session_id, factors)
                logger.info(f"Reusing active session {session.session_id} for assignment {teacher_subject_id}.")
            else:
                candidate = AttendanceSession(
                    session_id=uuid4(),
                    teacher_subject_id=teacher_subject_id,
                    class_id=assignment.class_id,
                    session_type=session_type,
                    starts_at=starts_at,
                    ends_at=ends_at,
                    is_active=True,
                    room_label=room_label,
                    expected_lat=expected_lat,
                    expected_lng=expected_lng,
                    allowed_radius_m=allowed_radius_m,
                    **factors.model_dump(),
                )
                session = await self.db_client.insert_session(candidate)
                if session is None:
                    # A concurrent start for the same lecture won the unique index.
                    session = await self.db_client.find_live_session_for_assignment(teacher_subject_id, now)
                    if session is None:
                        raise UsageError("An active session already exists for this lecture window.")
                    reused = True
                else:
                    logger.info(f"Attendance session {session.session_id} created for assignment {teacher_subject_id}.")
        except ServiceError:
            raise
        except Exception as e:
            logger.error(f"Error starting a session for assignment {teacher_subject_id}.", exc_info=True)
            raise ServiceError("A server error occurred while starting the attendance session.") from e

        qr = None
        if session.qr_enabled and is_live(session, now):
            qr = await self._current_or_new_qr(session, teacher_id, now)
        return session, reused, qr

    async def update_factors(self, teacher_id: UUID, session_id: UUID, factors: FactorConfig) -> AttendanceSession:
        """Factors may be toggled mid-session; submissions already decided are untouched."""
        await self.get_owned_session(teacher_id, session_id)
        try:
            updated = await self.db_client.update_session_factors(session_id, factors)
        except Exception as e:
            logger.error(f"Error updating factors of session {session_id}.", exc_info=True)
            raise ServiceError("A server error occurred while updating the session.") from e
        logger.info(f"Session {session_id} factors updated: {factors.model_dump()}")
        return updated

    async def close_session(self, teacher_id: UUID, session_id: UUID) -> None:
        """Marks the session inactive. Closing a closed session is a no-op."""
        await self.get_owned_session(teacher_id, session_id)
        try:
            await self.db_client.deactivate_session(session_id)
        except Exception as e:
            logger.error(f"Error while closing session {session_id}.", exc_info=True)
            raise ServiceError("A server error occurred while closing the session.") from e
        try:
            await self.redis_client.delete_active_qr(session_id)
        except Exception:
            logger.warning(f"Could not drop QR tracking for session {session_id}; it will expire on its own.", exc_info=True)
        logger.info(f"Session {session_id} closed by teacher '{teacher_id}'.")

    async def refresh_qr_token(self, teacher_id: UUID, session_id: UUID, now: Optional[datetime] = None) -> QRTokenIssue:
        """
        Returns the token the teacher's screen should show. Calls within one
        refresh interval return the same token; older tokens are never revoked
        and simply expire.
        """
        now = now or datetime.now(timezone.utc)
        session = await self.get_owned_session(teacher_id, session_id)
        if not is_live(session, now):
            raise UsageError("Session not found or inactive.")
        if not session.qr_enabled:
            raise UsageError("QR verification is not enabled for this session.")
        return await self._current_or_new_qr(session, teacher_id, now)

    async def _current_or_new_qr(self, session: AttendanceSession, teacher_id: UUID, now: datetime) -> QRTokenIssue:
        active = None
        try:
            active = await self.redis_client.get_active_qr(session.session_id)
        except Exception:
            logger.warning(f"QR tracking unavailable for session {session.session_id}; issuing from the database.", exc_info=True)

        if active is not None and active.valid_until > now:
            token = SessionQRToken(
                token=active.token,
                session_id=session.session_id,
                valid_from=active.issued_at,
                valid_until=active.valid_until,
            )
            return self._to_issue(token)

        try:
            token = None
            if not session.enable_dynamic_qr:
                # Static QR: one token for the whole window.
                latest = await self.db_client.get_latest_qr_token(session.session_id)
                if latest is not None and latest.valid_until > now:
                    token = latest
                else:
                    token = new_qr_token(session.session_id, now, session.ends_at - now)
                    await self.db_client.add_qr_token(token)
            else:
                token = new_qr_token(session.session_id, now, timedelta(seconds=settings.QR_TOKEN_TTL_SECONDS))
                await self.db_client.add_qr_token(token)
        except Exception as e:
            logger.error(f"Error issuing a QR token for session {session.session_id}.", exc_info=True)
            raise ServiceError("A server error occurred while issuing the QR token.") from e

        try:
            await self.redis_client.save_active_qr(
                ActiveQRRedis(
                    session_id=session.session_id,
                    teacher_id=teacher_id,
                    token=token.token,
                    valid_until=token.valid_until,
                    issued_at=token.valid_from,
                ),
                ttl=settings.QR_REFRESH_INTERVAL_SECONDS,
            )
        except Exception:
            logger.warning(f"Could not track QR token for session {session.session_id}.", exc_info=True)

        logger.info(f"QR token issued for session {session.session_id}, valid until {token.valid_until.isoformat()}.")
        return self._to_issue(token)

    @staticmethod
    def _to_issue(token: SessionQRToken) -> QRTokenIssue:
        return QRTokenIssue(
            session_id=token.session_id,
            token=token.token,
            valid_until=token.valid_until,
            qr_code=render_qr_data_url(token),
        )

    async def get_active_session_for_student(self, student_id: UUID, now: Optional[datetime] = None) -> AttendanceSession:
        now = now or datetime.now(timezone.utc)
        student = await self.db_client.get_student(student_id)
        if student is None:
            raise NotFoundError("Student not found.")
        if student.class_id is None:
            raise UsageError("Student has no class assigned.")
        session = await self.db_client.find_live_session_for_class(student.class_id, now)
        if session is None:
            raise UsageError("No active attendance session.")
        return session

    async def get_session_records(self, teacher_id: UUID, session_id: UUID) -> List[AttendanceRecord]:
        await self.get_owned_session(teacher_id, session_id)
        return await self.db_client.get_attendance_records(session_id)

    async def get_session_attempts(self, teacher_id: UUID, session_id: UUID) -> List[AttendanceAttempt]:
        await self.get_owned_session(teacher_id, session_id)
        return await self.db_client.get_attempts(session_id)
