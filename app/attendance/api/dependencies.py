#app/attendance/api/dependencies.py
import logging
from typing import Optional

from fastapi import Request, Depends
import redis.asyncio as redis
import asyncpg

from ..config.config import settings
from ..db.redis_client import RedisClient
from ..db.db_client import AsyncPostgresClient
from ..services.attendance_recorder import AttendanceRecorder
from ..services.biometric_service import FaceEnrollmentService, WebAuthnService
from ..services.location_service import LocationService
from ..services.session_service import SessionService
from ..services.verification_service import VerificationService
from ..tools.webauthn_verifier import WebAuthnVerifier

logger = logging.getLogger(__name__)


def get_redis_pool(request: Request) -> redis.ConnectionPool:
    """Redis connection pool created in the application lifespan."""
    return request.app.state.redis_pool


def get_postgres_pool(request: Request) -> asyncpg.Pool:
    """PostgreSQL connection pool created in the application lifespan."""
    return request.app.state.postgres_pool


def get_db_client(postgres_pool: asyncpg.Pool = Depends(get_postgres_pool)) -> AsyncPostgresClient:
    return AsyncPostgresClient(pool=postgres_pool)


def get_redis_client(redis_pool: redis.ConnectionPool = Depends(get_redis_pool)) -> RedisClient:
    return RedisClient(pool=redis_pool)


def get_webauthn_verifier() -> WebAuthnVerifier:
    return WebAuthnVerifier(
        rp_id=settings.WEBAUTHN_RP_ID,
        rp_name=settings.WEBAUTHN_RP_NAME,
        origin=settings.WEBAUTHN_ORIGIN,
        timeout_ms=settings.WEBAUTHN_TIMEOUT_MS,
    )


def get_session_service(
    db_client: AsyncPostgresClient = Depends(get_db_client),
    redis_client: RedisClient = Depends(get_redis_client)
) -> SessionService:
    """
    Builds a fresh SessionService per request on top of the shared pools.
    """
    return SessionService(db_client=db_client, redis_client=redis_client)


def get_attendance_recorder(db_client: AsyncPostgresClient = Depends(get_db_client)) -> AttendanceRecorder:
    return AttendanceRecorder(db_client=db_client)


def get_location_service(db_client: AsyncPostgresClient = Depends(get_db_client)) -> LocationService:
    return LocationService(db_client=db_client)


def get_face_enrollment_service(db_client: AsyncPostgresClient = Depends(get_db_client)) -> FaceEnrollmentService:
    return FaceEnrollmentService(db_client=db_client)


def get_webauthn_service(
    db_client: AsyncPostgresClient = Depends(get_db_client),
    redis_client: RedisClient = Depends(get_redis_client),
    verifier: WebAuthnVerifier = Depends(get_webauthn_verifier)
) -> WebAuthnService:
    return WebAuthnService(db_client=db_client, redis_client=redis_client, verifier=verifier)


def get_verification_service(
    db_client: AsyncPostgresClient = Depends(get_db_client),
    webauthn_service: WebAuthnService = Depends(get_webauthn_service),
    recorder: AttendanceRecorder = Depends(get_attendance_recorder)
) -> VerificationService:
    """
    The orchestrator shares one db client with its WebAuthn service and
    recorder for the duration of the request.
    """
    return VerificationService(db_client=db_client, webauthn_service=webauthn_service, recorder=recorder)


async def get_client_ip(request: Request) -> Optional[str]:
    """
    The caller's address as seen through common proxy headers; the first
    entry of X-Forwarded-For is the original client.
    """
    for header_name in ["cf-connecting-ip", "x-real-ip", "x-forwarded-for"]:
        header = request.headers.get(header_name)
        if header:
            client_ip = header.split(",")[0].strip()
            logger.debug(f"Client IP '{client_ip}' taken from header '{header_name}'.")
            return client_ip

    return request.client.host if request.client else None
