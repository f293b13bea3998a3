import logging
from datetime import datetime, timezone
from typing import Optional, Tuple
from uuid import UUID, uuid4

from ..db.db_client import AsyncPostgresClient
from ..models.db_models import AttendanceRecord, RecordStatus
from .errors import ServiceError

logger = logging.getLogger(__name__)


class AttendanceRecorder:
    """
    Writes the single attendance record of a (session, student) pair.

    The unique constraint on AttendanceRecords does the real work: the insert
    is `ON CONFLICT DO NOTHING`, and a lost race reads back the winner, so
    concurrent submissions converge on one row.
    """
    def __init__(self, db_client: AsyncPostgresClient):
        self.db_client = db_client

    async def ensure_present(self,
                             session_id: UUID,
                             student_id: UUID,
                             attempt_id: Optional[UUID] = None,
                             status: RecordStatus = RecordStatus.PRESENT,
                             verification_method: str = "MULTI_FACTOR",
                             marked_by_teacher_id: Optional[UUID] = None,
                             now: Optional[datetime] = None) -> Tuple[AttendanceRecord, bool]:
        """
        Returns (record, created). `created` is False when a record already
        existed; the existing record is returned unchanged.
        """
        candidate = AttendanceRecord(
            record_id=uuid4(),
            session_id=session_id,
            student_id=student_id,
            status=status,
            marked_at=now or datetime.now(timezone.utc),
            source_attempt_id=attempt_id,
            verification_method=verification_method,
            marked_by_teacher_id=marked_by_teacher_id,
        )
        inserted = await self.db_client.insert_attendance_record_if_absent(candidate)
        if inserted is not None:
            logger.info(f"Attendance record created for student '{student_id}' in session {session_id}.")
            return inserted, True

        existing = await self.db_client.get_attendance_record(session_id, student_id)
        if existing is None:
            # The conflicting row vanished between the insert and the read.
            raise ServiceError("Attendance record could not be written.")
        logger.info(f"Student '{student_id}' already has a record in session {session_id}; not duplicating.")
        return existing, False
