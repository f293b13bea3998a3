import uuid
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from app.attendance.models.db_models import Student, StudentBiometric, WebAuthnCredential
from app.attendance.models.redis_models import WebAuthnChallengeRedis
from app.attendance.services.biometric_service import (
    FaceEnrollmentService, WebAuthnService, REGISTRATION, AUTHENTICATION
)
from app.attendance.services.errors import ServiceError, UsageError, NotFoundError
from app.attendance.tools.webauthn_verifier import AssertionResult, VerificationError, WebAuthnVerifier
from tests.services.fakes import InMemoryDB

NOW = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


@pytest.fixture
def student() -> Student:
    return Student(student_id=uuid.uuid4(), full_name="Asha Rao", roll_no="CS-042", class_id=uuid.uuid4())


def _credential(student: Student, credential_id: str = "Y3JlZC0x", counter: int = 3) -> WebAuthnCredential:
    return WebAuthnCredential(credential_id=credential_id, student_id=student.student_id,
                              public_key="a2V5", counter=counter, transports=["internal"])


def _challenge(student: Student, purpose: str) -> WebAuthnChallengeRedis:
    return WebAuthnChallengeRedis(student_id=student.student_id, challenge="Y2hhbGxlbmdl",
                                  purpose=purpose, issued_at=NOW)


@pytest.mark.asyncio
class TestFaceEnrollmentService:

    async def test_enroll_canonicalizes_the_embedding(self, student):
        mock_db_client = AsyncMock()
        mock_db_client.get_student.return_value = student
        mock_db_client.upsert_face_enrollment.return_value = StudentBiometric(
            student_id=student.student_id, face_enrolled=True, face_embedding=[0.5, 0.25], consent_given=True)
        service = FaceEnrollmentService(mock_db_client)

        enrollment = await service.enroll(student.student_id, {"1": 0.25, "0": 0.5}, consent_given=True)

        assert enrollment.face_enrolled
        mock_db_client.upsert_face_enrollment.assert_awaited_once_with(student.student_id, [0.5, 0.25], True)

    async def test_enroll_requires_consent(self, student):
        mock_db_client = AsyncMock()
        service = FaceEnrollmentService(mock_db_client)

        with pytest.raises(UsageError, match="Consent"):
            await service.enroll(student.student_id, [0.1, 0.2], consent_given=False)
        mock_db_client.upsert_face_enrollment.assert_not_called()

    @pytest.mark.parametrize("embedding", [[], None, ["x"]])
    async def test_enroll_rejects_unusable_embeddings(self, student, embedding):
        service = FaceEnrollmentService(AsyncMock())

        with pytest.raises(UsageError):
            await service.enroll(student.student_id, embedding, consent_given=True)

    async def test_enroll_unknown_student(self, student):
        mock_db_client = AsyncMock()
        mock_db_client.get_student.return_value = None
        service = FaceEnrollmentService(mock_db_client)

        with pytest.raises(NotFoundError):
            await service.enroll(student.student_id, [0.1], consent_given=True)

    async def test_enroll_storage_failure(self, student):
        mock_db_client = AsyncMock()
        mock_db_client.get_student.return_value = student
        mock_db_client.upsert_face_enrollment.side_effect = ConnectionError("db gone")
        service = FaceEnrollmentService(mock_db_client)

        with pytest.raises(ServiceError):
            await service.enroll(student.student_id, [0.1], consent_given=True)

    async def test_delete_without_enrollment(self, student):
        mock_db_client = AsyncMock()
        mock_db_client.soft_delete_face_enrollment.return_value = 0
        service = FaceEnrollmentService(mock_db_client)

        with pytest.raises(NotFoundError, match="No enrollment found."):
            await service.delete(student.student_id)

    async def test_delete(self, student):
        mock_db_client = AsyncMock()
        mock_db_client.soft_delete_face_enrollment.return_value = 1
        service = FaceEnrollmentService(mock_db_client)

        await service.delete(student.student_id)

        mock_db_client.soft_delete_face_enrollment.assert_awaited_once_with(student.student_id)


@pytest.fixture
def webauthn_parts(student):
    db = InMemoryDB()
    db.students[student.student_id] = student
    mock_redis_client = AsyncMock()
    verifier = MagicMock()
    service = WebAuthnService(db_client=db, redis_client=mock_redis_client, verifier=verifier)
    return service, db, mock_redis_client, verifier


@pytest.mark.asyncio
class TestWebAuthnRegistration:

    async def test_options_store_the_challenge(self, webauthn_parts, student):
        service, _, mock_redis_client, verifier = webauthn_parts
        verifier.registration_options.return_value = ({"challenge": "Y2hhbGxlbmdl"}, "Y2hhbGxlbmdl")

        options = await service.registration_options(student.student_id)

        assert options == {"challenge": "Y2hhbGxlbmdl"}
        saved = mock_redis_client.save_webauthn_challenge.call_args[0][0]
        assert saved.purpose == REGISTRATION
        assert saved.challenge == "Y2hhbGxlbmdl"

    async def test_verify_stores_the_credential(self, webauthn_parts, student):
        service, db, mock_redis_client, verifier = webauthn_parts
        db.add_webauthn_credential = AsyncMock()
        mock_redis_client.pop_webauthn_challenge.return_value = _challenge(student, REGISTRATION)
        new_credential = _credential(student)
        verifier.verify_registration.return_value = new_credential

        stored = await service.verify_registration(student.student_id, {"id": "x"})

        assert stored == new_credential
        verifier.verify_registration.assert_called_once_with(student.student_id, {"id": "x"}, "Y2hhbGxlbmdl")
        db.add_webauthn_credential.assert_awaited_once_with(new_credential)

    async def test_verify_without_challenge(self, webauthn_parts, student):
        service, _, mock_redis_client, verifier = webauthn_parts
        mock_redis_client.pop_webauthn_challenge.return_value = None

        with pytest.raises(UsageError, match="Challenge not found or expired."):
            await service.verify_registration(student.student_id, {"id": "x"})
        verifier.verify_registration.assert_not_called()

    async def test_rejected_attestation(self, webauthn_parts, student):
        service, _, mock_redis_client, verifier = webauthn_parts
        mock_redis_client.pop_webauthn_challenge.return_value = _challenge(student, REGISTRATION)
        verifier.verify_registration.side_effect = VerificationError("bad")

        with pytest.raises(UsageError, match="Registration verification failed."):
            await service.verify_registration(student.student_id, {"id": "x"})

    async def test_malformed_registration_body_is_a_usage_error(self, student):
        mock_redis_client = AsyncMock()
        mock_redis_client.pop_webauthn_challenge.return_value = _challenge(student, REGISTRATION)
        db = InMemoryDB()
        db.add_webauthn_credential = AsyncMock()
        verifier = WebAuthnVerifier(rp_id="localhost", rp_name="Campus Attendance", origin="http://localhost:5173")
        service = WebAuthnService(db_client=db, redis_client=mock_redis_client, verifier=verifier)

        with pytest.raises(UsageError, match="Registration verification failed."):
            await service.verify_registration(student.student_id, {"id": "AAAA"})
        db.add_webauthn_credential.assert_not_called()

    async def test_duplicate_authenticator(self, webauthn_parts, student):
        service, db, mock_redis_client, verifier = webauthn_parts
        db.add_webauthn_credential = AsyncMock(side_effect=asyncpg.UniqueViolationError("duplicate"))
        mock_redis_client.pop_webauthn_challenge.return_value = _challenge(student, REGISTRATION)
        verifier.verify_registration.return_value = _credential(student)

        with pytest.raises(UsageError, match="already registered"):
            await service.verify_registration(student.student_id, {"id": "x"})

    async def test_authentication_options_need_a_credential(self, webauthn_parts, student):
        service, _, mock_redis_client, _ = webauthn_parts

        with pytest.raises(NotFoundError, match="Please enroll first."):
            await service.authentication_options(student.student_id)
        mock_redis_client.save_webauthn_challenge.assert_not_called()


@pytest.mark.asyncio
class TestVerifyForAttendance:

    async def test_success_advances_the_counter(self, webauthn_parts, student):
        service, db, mock_redis_client, verifier = webauthn_parts
        credential = _credential(student, counter=3)
        db.credentials[credential.credential_id] = credential
        mock_redis_client.pop_webauthn_challenge.return_value = _challenge(student, AUTHENTICATION)
        verifier.verify_assertion.return_value = AssertionResult(verified=True, new_counter=4)

        result = await service.verify_for_attendance(student.student_id, {"id": credential.credential_id}, NOW)

        assert result.verified
        assert db.credentials[credential.credential_id].counter == 4
        assert db.credentials[credential.credential_id].last_used == NOW
        mock_redis_client.pop_webauthn_challenge.assert_awaited_once_with(student.student_id, AUTHENTICATION)

    async def test_replayed_assertion_fails_on_the_second_use(self, webauthn_parts, student):
        service, db, mock_redis_client, verifier = webauthn_parts
        credential = _credential(student, counter=3)
        db.credentials[credential.credential_id] = credential
        mock_redis_client.pop_webauthn_challenge.return_value = _challenge(student, AUTHENTICATION)
        # The verifier judged both against counter 3; only one may advance it.
        verifier.verify_assertion.return_value = AssertionResult(verified=True, new_counter=4)

        first = await service.verify_for_attendance(student.student_id, {"id": credential.credential_id}, NOW)
        second = await service.verify_for_attendance(student.student_id, {"id": credential.credential_id}, NOW)

        assert first.verified
        assert not second.verified
        assert second.reason == "Signature counter did not increase."
        assert db.credentials[credential.credential_id].counter == 4

    async def test_no_credentials(self, webauthn_parts, student):
        service, _, mock_redis_client, _ = webauthn_parts

        result = await service.verify_for_attendance(student.student_id, {"id": "x"}, NOW)

        assert not result.verified
        assert result.reason == "No biometric credentials found. Please enroll first."
        mock_redis_client.pop_webauthn_challenge.assert_not_called()

    async def test_unknown_credential(self, webauthn_parts, student):
        service, db, _, _ = webauthn_parts
        credential = _credential(student)
        db.credentials[credential.credential_id] = credential

        result = await service.verify_for_attendance(student.student_id, {"id": "b3RoZXI"}, NOW)

        assert result.reason == "Credential not found."

    async def test_deactivated_credential_is_unknown(self, webauthn_parts, student):
        service, db, _, _ = webauthn_parts
        credential = _credential(student)
        credential.is_active = False
        db.credentials[credential.credential_id] = credential

        result = await service.verify_for_attendance(student.student_id, {"id": credential.credential_id}, NOW)

        assert not result.verified

    async def test_missing_challenge(self, webauthn_parts, student):
        service, db, mock_redis_client, verifier = webauthn_parts
        credential = _credential(student)
        db.credentials[credential.credential_id] = credential
        mock_redis_client.pop_webauthn_challenge.return_value = None

        result = await service.verify_for_attendance(student.student_id, {"id": credential.credential_id}, NOW)

        assert result.reason == "Challenge not found or expired."
        verifier.verify_assertion.assert_not_called()

    async def test_verifier_rejection_is_passed_through(self, webauthn_parts, student):
        service, db, mock_redis_client, verifier = webauthn_parts
        credential = _credential(student)
        db.credentials[credential.credential_id] = credential
        mock_redis_client.pop_webauthn_challenge.return_value = _challenge(student, AUTHENTICATION)
        verifier.verify_assertion.return_value = AssertionResult(verified=False, reason="Assertion verification failed.")

        result = await service.verify_for_attendance(student.student_id, {"id": credential.credential_id}, NOW)

        assert result.reason == "Assertion verification failed."
        assert db.credentials[credential.credential_id].counter == 3
