import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio

from app.attendance.main import app
from tests.api.tokens import create_access_token
from app.attendance.api.dependencies import get_session_service, get_attendance_recorder
from app.attendance.api.utilities.limiter import limiter
from app.attendance.models.db_models import AttendanceSession, AttendanceAttempt, FactorConfig, AttemptStatus
from app.attendance.services.attendance_recorder import AttendanceRecorder
from app.attendance.services.errors import UsageError, AuthorizationError
from app.attendance.services.session_service import QRTokenIssue
from tests.services.fakes import InMemoryDB

NOW = datetime.now(timezone.utc)
TEACHER_ID = uuid.uuid4()

# --- Fixtures ---

@pytest.fixture(autouse=True)
def no_rate_limit():
    limiter.enabled = False
    yield
    limiter.enabled = True
    app.dependency_overrides.clear()

@pytest_asyncio.fixture
async def teacher_client():
    token = create_access_token(TEACHER_ID, "Teacher")
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test/api/v1",
                                 headers={"Authorization": f"Bearer {token}"}) as client:
        yield client

@pytest.fixture
def session_service():
    service = AsyncMock()
    app.dependency_overrides[get_session_service] = lambda: service
    return service

def _session(**factors) -> AttendanceSession:
    return AttendanceSession(session_id=uuid.uuid4(), teacher_subject_id=uuid.uuid4(), class_id=uuid.uuid4(),
                             starts_at=NOW - timedelta(minutes=5), ends_at=NOW + timedelta(minutes=55), **factors)

def _create_body(**overrides) -> dict:
    body = {
        "teacher_subject_id": str(uuid.uuid4()),
        "starts_at": (NOW - timedelta(minutes=5)).isoformat(),
        "ends_at": (NOW + timedelta(minutes=55)).isoformat(),
        "factors": {"enable_face": True, "enable_dynamic_qr": True},
    }
    body.update(overrides)
    return body

# --- Tests ---

@pytest.mark.asyncio
class TestSessionLifecycleAPI:

    async def test_start_new_session_is_201(self, teacher_client, session_service):
        session = _session(enable_face=True, enable_dynamic_qr=True)
        qr = QRTokenIssue(session_id=session.session_id, token="c" * 64,
                          valid_until=NOW + timedelta(seconds=120), qr_code="data:image/png;base64,AAAA")
        session_service.start_or_reuse.return_value = (session, False, qr)

        response = await teacher_client.post("/teacher/sessions", json=_create_body())

        assert response.status_code == 201
        body = response.json()
        assert body["reused"] is False
        assert body["session"]["session_id"] == str(session.session_id)
        assert body["qr"]["token"] == "c" * 64
        kwargs = session_service.start_or_reuse.call_args.kwargs
        assert kwargs["teacher_id"] == TEACHER_ID
        assert kwargs["factors"] == FactorConfig(enable_face=True, enable_dynamic_qr=True)

    async def test_reused_session_is_200(self, teacher_client, session_service):
        session_service.start_or_reuse.return_value = (_session(), True, None)

        response = await teacher_client.post("/teacher/sessions", json=_create_body(factors={}))

        assert response.status_code == 200
        assert response.json()["reused"] is True
        assert response.json()["qr"] is None

    async def test_inverted_window_is_422(self, teacher_client, session_service):
        body = _create_body(ends_at=(NOW - timedelta(hours=1)).isoformat())

        response = await teacher_client.post("/teacher/sessions", json=body)

        assert response.status_code == 422
        session_service.start_or_reuse.assert_not_called()

    async def test_not_assigned_teacher_is_404(self, teacher_client, session_service):
        session_service.start_or_reuse.side_effect = AuthorizationError("You are not assigned to this subject.")

        response = await teacher_client.post("/teacher/sessions", json=_create_body())

        assert response.status_code == 404

    async def test_student_cannot_start_sessions(self, session_service):
        token = create_access_token(uuid.uuid4(), "Student")
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test/api/v1",
                                     headers={"Authorization": f"Bearer {token}"}) as client:
            response = await client.post("/teacher/sessions", json=_create_body())

        assert response.status_code == 403

    async def test_update_factors(self, teacher_client, session_service):
        session = _session(enable_geofencing=True)
        session_service.update_factors.return_value = session

        response = await teacher_client.patch(f"/teacher/sessions/{session.session_id}/factors",
                                              json={"enable_geofencing": True})

        assert response.status_code == 200
        assert response.json()["enable_geofencing"] is True
        session_service.update_factors.assert_awaited_once_with(
            TEACHER_ID, session.session_id, FactorConfig(enable_geofencing=True))

    async def test_refresh_qr(self, teacher_client, session_service):
        session_id = uuid.uuid4()
        session_service.refresh_qr_token.return_value = QRTokenIssue(
            session_id=session_id, token="d" * 64, valid_until=NOW + timedelta(seconds=120),
            qr_code="data:image/png;base64,AAAA")

        response = await teacher_client.post(f"/teacher/sessions/{session_id}/qr/refresh")

        assert response.status_code == 200
        assert response.json()["token"] == "d" * 64

    async def test_refresh_qr_without_qr_factor_is_400(self, teacher_client, session_service):
        session_service.refresh_qr_token.side_effect = UsageError("QR verification is not enabled for this session.")

        response = await teacher_client.post(f"/teacher/sessions/{uuid.uuid4()}/qr/refresh")

        assert response.status_code == 400

    async def test_close_is_204(self, teacher_client, session_service):
        session_id = uuid.uuid4()

        response = await teacher_client.post(f"/teacher/sessions/{session_id}/close")

        assert response.status_code == 204
        session_service.close_session.assert_awaited_once_with(TEACHER_ID, session_id)

    async def test_close_foreign_session_is_404(self, teacher_client, session_service):
        session_service.close_session.side_effect = AuthorizationError("Session not found or you are not authorized to access it.")

        response = await teacher_client.post(f"/teacher/sessions/{uuid.uuid4()}/close")

        assert response.status_code == 404


@pytest.mark.asyncio
class TestRecordsAPI:

    async def test_list_attempts(self, teacher_client, session_service):
        session_id = uuid.uuid4()
        session_service.get_session_attempts.return_value = [
            AttendanceAttempt(attempt_id=uuid.uuid4(), session_id=session_id, student_id=uuid.uuid4(),
                              attempt_status=AttemptStatus.SUCCESS, created_at=NOW)
        ]

        response = await teacher_client.get(f"/teacher/sessions/{session_id}/attempts")

        assert response.status_code == 200
        assert [a["attempt_status"] for a in response.json()] == ["SUCCESS"]

    async def test_manual_marking_is_idempotent(self, teacher_client, session_service):
        db = InMemoryDB()
        app.dependency_overrides[get_attendance_recorder] = lambda: AttendanceRecorder(db)
        session_id, student_id = uuid.uuid4(), uuid.uuid4()
        session_service.get_owned_session.return_value = _session()
        session_service.get_session_records.return_value = []

        first = await teacher_client.post(f"/teacher/sessions/{session_id}/records", json={"student_id": str(student_id)})
        second = await teacher_client.post(f"/teacher/sessions/{session_id}/records",
                                           json={"student_id": str(student_id), "status": "LATE"})
        records = await teacher_client.get(f"/teacher/sessions/{session_id}/records")

        assert first.status_code == 201
        assert first.json()["created"] is True
        assert first.json()["record"]["verification_method"] == "MANUAL"
        assert first.json()["record"]["marked_by_teacher_id"] == str(TEACHER_ID)
        assert second.status_code == 200
        assert second.json()["created"] is False
        assert second.json()["record"]["status"] == "PRESENT"
        assert len(db.records) == 1
        assert records.status_code == 200

    async def test_manual_marking_on_foreign_session_is_404(self, teacher_client, session_service):
        db = InMemoryDB()
        app.dependency_overrides[get_attendance_recorder] = lambda: AttendanceRecorder(db)
        session_service.get_owned_session.side_effect = AuthorizationError("Session not found or you are not authorized to access it.")

        response = await teacher_client.post(f"/teacher/sessions/{uuid.uuid4()}/records",
                                             json={"student_id": str(uuid.uuid4())})

        assert response.status_code == 404
        assert db.records == {}


@pytest.mark.asyncio
async def test_health():
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_limiter_is_attached_without_startup():
    assert app.state.limiter is limiter
