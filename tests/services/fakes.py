from datetime import datetime
from typing import Dict, List, Optional, Tuple
from uuid import UUID

from app.attendance.models.db_models import (
    AttendanceSession, Student, ClassRoom, StudentBiometric, SessionQRToken,
    AttendanceAttempt, AttendanceRecord, WebAuthnCredential
)


class InMemoryDB:
    """
    Stand-in for AsyncPostgresClient with the same uniqueness behaviour for
    attendance records and credential counters.
    """

    def __init__(self):
        self.sessions: Dict[UUID, AttendanceSession] = {}
        self.students: Dict[UUID, Student] = {}
        self.classes: Dict[UUID, ClassRoom] = {}
        self.biometrics: Dict[UUID, StudentBiometric] = {}
        self.qr_tokens: Dict[Tuple[UUID, str], SessionQRToken] = {}
        self.credentials: Dict[str, WebAuthnCredential] = {}
        self.attempts: List[AttendanceAttempt] = []
        self.records: Dict[Tuple[UUID, UUID], AttendanceRecord] = {}

    async def get_session(self, session_id: UUID) -> Optional[AttendanceSession]:
        return self.sessions.get(session_id)

    async def get_student(self, student_id: UUID) -> Optional[Student]:
        return self.students.get(student_id)

    async def get_class(self, class_id: UUID) -> Optional[ClassRoom]:
        return self.classes.get(class_id)

    async def get_biometric(self, student_id: UUID) -> Optional[StudentBiometric]:
        return self.biometrics.get(student_id)

    async def get_qr_token(self, session_id: UUID, token: str) -> Optional[SessionQRToken]:
        return self.qr_tokens.get((session_id, token))

    async def add_qr_token(self, token: SessionQRToken):
        self.qr_tokens[(token.session_id, token.token)] = token

    async def get_webauthn_credentials(self, student_id: UUID) -> List[WebAuthnCredential]:
        return [c for c in self.credentials.values() if c.student_id == student_id and c.is_active]

    async def advance_credential_counter(self, credential_id: str, new_counter: int, used_at: datetime) -> bool:
        credential = self.credentials.get(credential_id)
        if credential is None or credential.counter >= new_counter:
            return False
        credential.counter = new_counter
        credential.last_used = used_at
        return True

    async def add_attempt(self, attempt: AttendanceAttempt):
        self.attempts.append(attempt.model_copy(deep=True))

    async def insert_attendance_record_if_absent(self, record: AttendanceRecord) -> Optional[AttendanceRecord]:
        key = (record.session_id, record.student_id)
        if key in self.records:
            return None
        self.records[key] = record
        return record

    async def get_attendance_record(self, session_id: UUID, student_id: UUID) -> Optional[AttendanceRecord]:
        return self.records.get((session_id, student_id))
