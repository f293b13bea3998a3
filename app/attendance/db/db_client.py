import json
import logging
from typing import List, Optional
from uuid import UUID
import asyncpg
from datetime import datetime, timezone
from ..models.db_models import (
    ClassRoom, Student, TeacherSubject, AttendanceSession, FactorConfig,
    SessionQRToken, StudentBiometric, WebAuthnCredential,
    AttendanceAttempt, AttendanceRecord
)

logger = logging.getLogger(__name__)


def _affected_rows(status: str) -> int:
    """asyncpg returns command tags such as 'UPDATE 1'; extract the row count."""
    try:
        return int(str(status).split()[-1])
    except (ValueError, IndexError):
        return 0


def _attempt_from_row(record) -> AttendanceAttempt:
    data = dict(record)
    failures = data.get("failures")
    if isinstance(failures, str):
        data["failures"] = json.loads(failures)
    elif failures is None:
        data["failures"] = []
    return AttendanceAttempt(**data)


class AsyncPostgresClient:
    """
    PostgreSQL client for every durable document of the verification pipeline.
    Invariants that must survive concurrent requests are expressed as
    constraints in db/schema.sql and relied on here through ON CONFLICT and
    conditional UPDATEs.
    """
    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    # ===== Reference data =====

    async def get_class(self, class_id: UUID) -> Optional[ClassRoom]:
        query = "SELECT * FROM Classes WHERE class_id = $1;"
        async with self._pool.acquire() as connection:
            record = await connection.fetchrow(query, class_id)
            return ClassRoom(**record) if record else None

    async def get_student(self, student_id: UUID) -> Optional[Student]:
        query = "SELECT * FROM Students WHERE student_id = $1;"
        async with self._pool.acquire() as connection:
            record = await connection.fetchrow(query, student_id)
            return Student(**record) if record else None

    async def get_teacher_subject(self, teacher_subject_id: UUID) -> Optional[TeacherSubject]:
        query = "SELECT * FROM TeacherSubjects WHERE teacher_subject_id = $1;"
        async with self._pool.acquire() as connection:
            record = await connection.fetchrow(query, teacher_subject_id)
            return TeacherSubject(**record) if record else None

    # ===== Attendance Sessions =====

    async def get_session(self, session_id: UUID) -> Optional[AttendanceSession]:
        query = "SELECT * FROM AttendanceSessions WHERE session_id = $1;"
        async with self._pool.acquire() as connection:
            record = await connection.fetchrow(query, session_id)
            return AttendanceSession(**record) if record else None

    async def find_live_session_for_assignment(self, teacher_subject_id: UUID, now: datetime) -> Optional[AttendanceSession]:
        """Active session of a teaching assignment whose window contains `now`."""
        query = """
            SELECT * FROM AttendanceSessions
            WHERE teacher_subject_id = $1 AND is_active = TRUE
              AND starts_at <= $2 AND ends_at >= $2
            ORDER BY starts_at DESC
            LIMIT 1;
        """
        async with self._pool.acquire() as connection:
            record = await connection.fetchrow(query, teacher_subject_id, now)
            return AttendanceSession(**record) if record else None

    async def find_live_session_for_class(self, class_id: UUID, now: datetime) -> Optional[AttendanceSession]:
        query = """
            SELECT * FROM AttendanceSessions
            WHERE class_id = $1 AND is_active = TRUE
              AND starts_at <= $2 AND ends_at >= $2
            ORDER BY starts_at DESC
            LIMIT 1;
        """
        async with self._pool.acquire() as connection:
            record = await connection.fetchrow(query, class_id, now)
            return AttendanceSession(**record) if record else None

    async def insert_session(self, session: AttendanceSession) -> Optional[AttendanceSession]:
        """
        Inserts a new session. Returns None when an active session with the same
        assignment and window already exists (partial unique index).
        """
        query = """
            INSERT INTO AttendanceSessions (
                session_id, teacher_subject_id, class_id, session_type, starts_at, ends_at,
                is_active, room_label, expected_lat, expected_lng, allowed_radius_m,
                enable_geofencing, enable_face, enable_biometric, enable_static_qr, enable_dynamic_qr
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16)
            ON CONFLICT (teacher_subject_id, starts_at, ends_at) WHERE is_active DO NOTHING
            RETURNING *;
        """
        async with self._pool.acquire() as connection:
            record = await connection.fetchrow(
                query,
                session.session_id, session.teacher_subject_id, session.class_id,
                session.session_type.value, session.starts_at, session.ends_at,
                session.is_active, session.room_label, session.expected_lat,
                session.expected_lng, session.allowed_radius_m,
                session.enable_geofencing, session.enable_face, session.enable_biometric,
                session.enable_static_qr, session.enable_dynamic_qr
            )
            return AttendanceSession(**record) if record else None

    async def update_session_factors(self, session_id: UUID, factors: FactorConfig) -> Optional[AttendanceSession]:
        query = """
            UPDATE AttendanceSessions
            SET enable_geofencing = $2,
                enable_face = $3,
                enable_biometric = $4,
                enable_static_qr = $5,
                enable_dynamic_qr = $6
            WHERE session_id = $1
            RETURNING *;
        """
        async with self._pool.acquire() as connection:
            record = await connection.fetchrow(
                query, session_id, factors.enable_geofencing, factors.enable_face,
                factors.enable_biometric, factors.enable_static_qr, factors.enable_dynamic_qr
            )
            return AttendanceSession(**record) if record else None

    async def deactivate_session(self, session_id: UUID):
        query = "UPDATE AttendanceSessions SET is_active = FALSE WHERE session_id = $1;"
        async with self._pool.acquire() as connection:
            return await connection.execute(query, session_id)

    # ===== QR Tokens =====

    async def add_qr_token(self, token: SessionQRToken):
        query = """
            INSERT INTO SessionQRTokens (token, session_id, valid_from, valid_until)
            VALUES ($1, $2, $3, $4);
        """
        async with self._pool.acquire() as connection:
            await connection.execute(query, token.token, token.session_id, token.valid_from, token.valid_until)

    async def get_qr_token(self, session_id: UUID, token: str) -> Optional[SessionQRToken]:
        """Exact (session, token) lookup; a token of another session never matches."""
        query = "SELECT * FROM SessionQRTokens WHERE session_id = $1 AND token = $2;"
        async with self._pool.acquire() as connection:
            record = await connection.fetchrow(query, session_id, token)
            return SessionQRToken(**record) if record else None

    async def get_latest_qr_token(self, session_id: UUID) -> Optional[SessionQRToken]:
        query = """
            SELECT * FROM SessionQRTokens WHERE session_id = $1
            ORDER BY valid_until DESC
            LIMIT 1;
        """
        async with self._pool.acquire() as connection:
            record = await connection.fetchrow(query, session_id)
            return SessionQRToken(**record) if record else None

    async def purge_expired_qr_tokens(self, expired_before: datetime) -> int:
        query = "DELETE FROM SessionQRTokens WHERE valid_until < $1;"
        async with self._pool.acquire() as connection:
            return _affected_rows(await connection.execute(query, expired_before))

    # ===== Face Enrollment =====

    async def get_biometric(self, student_id: UUID) -> Optional[StudentBiometric]:
        query = "SELECT * FROM StudentBiometrics WHERE student_id = $1;"
        async with self._pool.acquire() as connection:
            record = await connection.fetchrow(query, student_id)
            return StudentBiometric(**record) if record else None

    async def upsert_face_enrollment(self, student_id: UUID, embedding: List[float], consent_given: bool) -> StudentBiometric:
        """Creates or replaces the enrollment; the embedding and flag are written together."""
        now = datetime.now(timezone.utc)
        query = """
            INSERT INTO StudentBiometrics (student_id, face_enrolled, face_embedding, face_updated_at,
                                           consent_given, consent_at, deleted_at)
            VALUES ($1, TRUE, $2, $3, $4, $3, NULL)
            ON CONFLICT (student_id) DO UPDATE SET
                face_enrolled = TRUE,
                face_embedding = EXCLUDED.face_embedding,
                face_updated_at = EXCLUDED.face_updated_at,
                consent_given = EXCLUDED.consent_given,
                consent_at = EXCLUDED.consent_at,
                deleted_at = NULL
            RETURNING *;
        """
        async with self._pool.acquire() as connection:
            record = await connection.fetchrow(query, student_id, embedding, now, consent_given)
            return StudentBiometric(**record)

    async def soft_delete_face_enrollment(self, student_id: UUID) -> int:
        query = """
            UPDATE StudentBiometrics
            SET face_enrolled = FALSE, face_embedding = NULL, deleted_at = $2
            WHERE student_id = $1;
        """
        async with self._pool.acquire() as connection:
            return _affected_rows(await connection.execute(query, student_id, datetime.now(timezone.utc)))

    # ===== WebAuthn Credentials =====

    async def get_webauthn_credentials(self, student_id: UUID) -> List[WebAuthnCredential]:
        query = "SELECT * FROM WebAuthnCredentials WHERE student_id = $1 AND is_active = TRUE;"
        async with self._pool.acquire() as connection:
            records = await connection.fetch(query, student_id)
            return [WebAuthnCredential(**record) for record in records]

    async def add_webauthn_credential(self, credential: WebAuthnCredential):
        query = """
            INSERT INTO WebAuthnCredentials (credential_id, student_id, public_key, counter,
                                             device_type, transports, is_active, enrolled_at)
            VALUES ($1, $2, $3, $4, $5, $6, TRUE, $7);
        """
        async with self._pool.acquire() as connection:
            await connection.execute(
                query, credential.credential_id, credential.student_id, credential.public_key,
                credential.counter, credential.device_type, credential.transports,
                credential.enrolled_at or datetime.now(timezone.utc)
            )

    async def advance_credential_counter(self, credential_id: str, new_counter: int, used_at: datetime) -> bool:
        """
        Moves the signature counter forward. Returns False when the stored counter
        is already >= new_counter, i.e. the assertion was replayed concurrently.
        """
        query = """
            UPDATE WebAuthnCredentials
            SET counter = $2, last_used = $3
            WHERE credential_id = $1 AND counter < $2;
        """
        async with self._pool.acquire() as connection:
            return _affected_rows(await connection.execute(query, credential_id, new_counter, used_at)) == 1

    async def deactivate_webauthn_credential(self, student_id: UUID, credential_id: str) -> int:
        query = """
            UPDATE WebAuthnCredentials SET is_active = FALSE
            WHERE student_id = $1 AND credential_id = $2;
        """
        async with self._pool.acquire() as connection:
            return _affected_rows(await connection.execute(query, student_id, credential_id))

    # ===== Attempts (append-only) =====

    async def add_attempt(self, attempt: AttendanceAttempt):
        query = """
            INSERT INTO AttendanceAttempts (
                attempt_id, session_id, student_id, qr_token, qr_valid, face_verified, face_score,
                liveness_verified, biometric_verified, biometric_type, location_verified,
                location_distance_m, student_lat, student_lng, client_ip, attempt_status,
                failures, fail_reason, created_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17::jsonb, $18, $19);
        """
        failures_json = json.dumps([failure.model_dump(mode="json") for failure in attempt.failures])
        async with self._pool.acquire() as connection:
            await connection.execute(
                query,
                attempt.attempt_id, attempt.session_id, attempt.student_id, attempt.qr_token,
                attempt.qr_valid, attempt.face_verified, attempt.face_score,
                attempt.liveness_verified, attempt.biometric_verified, attempt.biometric_type,
                attempt.location_verified, attempt.location_distance_m, attempt.student_lat,
                attempt.student_lng, attempt.client_ip, attempt.attempt_status.value,
                failures_json, attempt.fail_reason, attempt.created_at
            )

    async def get_attempts(self, session_id: UUID) -> List[AttendanceAttempt]:
        query = "SELECT * FROM AttendanceAttempts WHERE session_id = $1 ORDER BY created_at;"
        async with self._pool.acquire() as connection:
            records = await connection.fetch(query, session_id)
            return [_attempt_from_row(record) for record in records]

    # ===== Attendance Records =====

    async def insert_attendance_record_if_absent(self, record: AttendanceRecord) -> Optional[AttendanceRecord]:
        """
        Inserts the record unless (session_id, student_id) already exists.
        Returns the inserted row, or None when another record won.
        """
        query = """
            INSERT INTO AttendanceRecords (record_id, session_id, student_id, status, marked_at,
                                           source_attempt_id, verification_method, marked_by_teacher_id)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            ON CONFLICT (session_id, student_id) DO NOTHING
            RETURNING *;
        """
        async with self._pool.acquire() as connection:
            row = await connection.fetchrow(
                query, record.record_id, record.session_id, record.student_id, record.status.value,
                record.marked_at, record.source_attempt_id, record.verification_method,
                record.marked_by_teacher_id
            )
            return AttendanceRecord(**row) if row else None

    async def get_attendance_record(self, session_id: UUID, student_id: UUID) -> Optional[AttendanceRecord]:
        query = "SELECT * FROM AttendanceRecords WHERE session_id = $1 AND student_id = $2;"
        async with self._pool.acquire() as connection:
            record = await connection.fetchrow(query, session_id, student_id)
            return AttendanceRecord(**record) if record else None

    async def get_attendance_records(self, session_id: UUID) -> List[AttendanceRecord]:
        query = "SELECT * FROM AttendanceRecords WHERE session_id = $1 ORDER BY marked_at;"
        async with self._pool.acquire() as connection:
            records = await connection.fetch(query, session_id)
            return [AttendanceRecord(**record) for record in records]
