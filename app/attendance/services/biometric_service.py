import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID

import asyncpg

from ..config.config import settings
from ..db.db_client import AsyncPostgresClient
from ..db.redis_client import RedisClient
from ..models.db_models import StudentBiometric, WebAuthnCredential
from ..models.redis_models import WebAuthnChallengeRedis
from ..tools.face_matcher import to_embedding
from ..tools.webauthn_verifier import (
    WebAuthnVerifier, AssertionResult, VerificationError, assertion_credential_id
)
from .errors import ServiceError, UsageError, NotFoundError

logger = logging.getLogger(__name__)

REGISTRATION = "registration"
AUTHENTICATION = "authentication"


class FaceEnrollmentService:
    """Face embedding enrollment with consent tracking and soft delete."""

    def __init__(self, db_client: AsyncPostgresClient):
        self.db_client = db_client

    async def enroll(self, student_id: UUID, face_embedding: Any, consent_given: bool) -> StudentBiometric:
        if not consent_given:
            raise UsageError("Consent is required to enroll a face.")
        try:
            vector = to_embedding(face_embedding)
        except ValueError as e:
            raise UsageError(str(e)) from e
        if vector is None:
            raise UsageError("face_embedding must not be empty.")

        if await self.db_client.get_student(student_id) is None:
            raise NotFoundError("Student not found.")
        try:
            enrollment = await self.db_client.upsert_face_enrollment(student_id, vector.tolist(), consent_given)
        except Exception as e:
            logger.error(f"Error saving face enrollment of student '{student_id}'.", exc_info=True)
            raise ServiceError("A server error occurred during enrollment.") from e
        logger.info(f"Face enrolled for student '{student_id}' ({len(vector)} dimensions).")
        return enrollment

    async def get_status(self, student_id: UUID) -> Optional[StudentBiometric]:
        return await self.db_client.get_biometric(student_id)

    async def delete(self, student_id: UUID) -> None:
        """Clears the embedding and flag; the row stays with deleted_at set."""
        if await self.db_client.soft_delete_face_enrollment(student_id) == 0:
            raise NotFoundError("No enrollment found.")
        logger.info(f"Face enrollment of student '{student_id}' deleted.")


class WebAuthnService:
    """
    Platform authenticator enrollment and the assertion check used by the
    biometric verification factor. Challenges are kept in Redis, keyed by
    student and ceremony, and consumed by the first response that uses them.
    """

    def __init__(self, db_client: AsyncPostgresClient, redis_client: RedisClient, verifier: WebAuthnVerifier):
        self.db_client = db_client
        self.redis_client = redis_client
        self.verifier = verifier

    async def _store_challenge(self, student_id: UUID, challenge: str, purpose: str):
        await self.redis_client.save_webauthn_challenge(
            WebAuthnChallengeRedis(
                student_id=student_id,
                challenge=challenge,
                purpose=purpose,
                issued_at=datetime.now(timezone.utc),
            ),
            ttl=settings.WEBAUTHN_CHALLENGE_TTL_SECONDS,
        )

    async def registration_options(self, student_id: UUID) -> Dict[str, Any]:
        student = await self.db_client.get_student(student_id)
        if student is None:
            raise NotFoundError("Student not found.")
        existing = await self.db_client.get_webauthn_credentials(student_id)
        options, challenge = self.verifier.registration_options(student, existing)
        await self._store_challenge(student_id, challenge, REGISTRATION)
        return options

    async def verify_registration(self, student_id: UUID, credential: Dict[str, Any]) -> WebAuthnCredential:
        pending = await self.redis_client.pop_webauthn_challenge(student_id, REGISTRATION)
        if pending is None:
            raise UsageError("Challenge not found or expired.")
        try:
            new_credential = self.verifier.verify_registration(student_id, credential, pending.challenge)
        except VerificationError as e:
            logger.info(f"Registration rejected for student '{student_id}': {e}")
            raise UsageError("Registration verification failed.") from e

        try:
            await self.db_client.add_webauthn_credential(new_credential)
        except asyncpg.UniqueViolationError as e:
            raise UsageError("This authenticator is already registered.") from e
        except Exception as e:
            logger.error(f"Error storing credential for student '{student_id}'.", exc_info=True)
            raise ServiceError("A server error occurred while storing the credential.") from e
        logger.info(f"WebAuthn credential {new_credential.credential_id} enrolled for student '{student_id}'.")
        return new_credential

    async def authentication_options(self, student_id: UUID) -> Dict[str, Any]:
        credentials = await self.db_client.get_webauthn_credentials(student_id)
        if not credentials:
            raise NotFoundError("No biometric credentials found. Please enroll first.")
        options, challenge = self.verifier.authentication_options(credentials)
        await self._store_challenge(student_id, challenge, AUTHENTICATION)
        return options

    async def list_credentials(self, student_id: UUID) -> List[WebAuthnCredential]:
        return await self.db_client.get_webauthn_credentials(student_id)

    async def remove_credential(self, student_id: UUID, credential_id: str) -> None:
        if await self.db_client.deactivate_webauthn_credential(student_id, credential_id) == 0:
            raise NotFoundError("Credential not found.")
        logger.info(f"WebAuthn credential {credential_id} of student '{student_id}' deactivated.")

    async def verify_for_attendance(self, student_id: UUID, assertion: Dict[str, Any], now: datetime) -> AssertionResult:
        """
        Verifies an assertion submitted with attendance evidence. Each failure
        carries its own reason. On success the stored counter is advanced with a
        conditional update; losing that update means the same assertion was
        used concurrently, which fails like any replay.
        """
        credentials = await self.db_client.get_webauthn_credentials(student_id)
        if not credentials:
            return AssertionResult(verified=False, reason="No biometric credentials found. Please enroll first.")

        credential_id = assertion_credential_id(assertion)
        stored = next((c for c in credentials if c.credential_id == credential_id), None)
        if stored is None:
            return AssertionResult(verified=False, reason="Credential not found.")

        pending = await self.redis_client.pop_webauthn_challenge(student_id, AUTHENTICATION)
        if pending is None:
            return AssertionResult(verified=False, reason="Challenge not found or expired.")

        result = self.verifier.verify_assertion(stored, assertion, pending.challenge)
        if not result.verified:
            return result

        if not await self.db_client.advance_credential_counter(stored.credential_id, result.new_counter, now):
            logger.warning(f"Counter of credential {stored.credential_id} already advanced; treating as replay.")
            return AssertionResult(verified=False, reason="Signature counter did not increase.")
        return result
