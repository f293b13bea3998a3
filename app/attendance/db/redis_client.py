import logging
from typing import Optional
from uuid import UUID
import redis.asyncio as redis

from ..models.redis_models import WebAuthnChallengeRedis, ActiveQRRedis

logger = logging.getLogger(__name__)

class RedisClient:
    """
    Redis client for the short-lived, explicitly time-boxed state of the
    service: WebAuthn challenges and the currently displayed QR token.
    """

    def __init__(self, pool: redis.ConnectionPool):
        self._redis = redis.Redis(connection_pool=pool, decode_responses=True)

    # ===== WebAuthn Challenges =====

    async def save_webauthn_challenge(self, challenge: WebAuthnChallengeRedis, ttl: int):
        """Stores the pending challenge of a student, replacing any earlier one."""
        key = f"webauthn_challenge:{challenge.purpose}:{challenge.student_id}"
        await self._redis.set(key, challenge.model_dump_json(), ex=ttl)

    async def pop_webauthn_challenge(self, student_id: UUID, purpose: str) -> Optional[WebAuthnChallengeRedis]:
        """Reads and deletes the pending challenge in one step, so it can be used once."""
        key = f"webauthn_challenge:{purpose}:{student_id}"
        challenge_json = await self._redis.getdel(key)
        return WebAuthnChallengeRedis.model_validate_json(challenge_json) if challenge_json else None

    # ===== Active QR Tracking =====

    async def save_active_qr(self, active_qr: ActiveQRRedis, ttl: int):
        key = f"active_qr:{active_qr.session_id}"
        await self._redis.set(key, active_qr.model_dump_json(), ex=ttl)

    async def get_active_qr(self, session_id: UUID) -> Optional[ActiveQRRedis]:
        key = f"active_qr:{session_id}"
        active_json = await self._redis.get(key)
        return ActiveQRRedis.model_validate_json(active_json) if active_json else None

    async def delete_active_qr(self, session_id: UUID) -> int:
        key = f"active_qr:{session_id}"
        return await self._redis.delete(key)
