import json
import uuid
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.attendance.db.db_client import AsyncPostgresClient, _affected_rows, _attempt_from_row
from app.attendance.models.db_models import AttendanceRecord, Factor

NOW = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


@pytest.fixture
def connection():
    return AsyncMock()


@pytest.fixture
def db_client(connection):
    pool = MagicMock()
    pool.acquire.return_value.__aenter__.return_value = connection
    return AsyncPostgresClient(pool=pool)


@pytest.mark.parametrize("status, rows", [("UPDATE 1", 1), ("DELETE 17", 17), ("INSERT 0 1", 1), ("", 0), (None, 0)])
def test_affected_rows(status, rows):
    assert _affected_rows(status) == rows


def test_attempt_from_row_parses_jsonb_failures():
    row = {
        "attempt_id": uuid.uuid4(), "session_id": uuid.uuid4(), "student_id": uuid.uuid4(),
        "attempt_status": "FAILED", "failures": json.dumps([{"factor": "QR", "reason": "QR expired."}]),
        "fail_reason": "QR expired.", "created_at": NOW,
    }

    attempt = _attempt_from_row(row)

    assert attempt.failures[0].factor == Factor.QR
    assert attempt.fail_reason == "QR expired."


@pytest.mark.asyncio
class TestAsyncPostgresClient:

    async def test_counter_advance_reports_the_conditional_update(self, db_client, connection):
        connection.execute.return_value = "UPDATE 1"
        assert await db_client.advance_credential_counter("Y3JlZA", 8, NOW)

        connection.execute.return_value = "UPDATE 0"
        assert not await db_client.advance_credential_counter("Y3JlZA", 8, NOW)

    async def test_duplicate_record_insert_returns_none(self, db_client, connection):
        connection.fetchrow.return_value = None
        record = AttendanceRecord(record_id=uuid.uuid4(), session_id=uuid.uuid4(), student_id=uuid.uuid4(), marked_at=NOW)

        assert await db_client.insert_attendance_record_if_absent(record) is None
        assert "ON CONFLICT (session_id, student_id) DO NOTHING" in connection.fetchrow.call_args[0][0]

    async def test_purge_returns_deleted_count(self, db_client, connection):
        connection.execute.return_value = "DELETE 12"

        assert await db_client.purge_expired_qr_tokens(NOW) == 12
        assert connection.execute.call_args[0][1] == NOW
