# tests/api/tokens.py
from datetime import datetime, timedelta, timezone
from uuid import UUID

import jwt

from app.attendance.config.config import settings


def create_access_token(user_id: UUID, role: str, expires_delta: timedelta = timedelta(hours=8)) -> str:
    """Signs a bearer token the way the identity service does: `sub`, `role` and `exp`."""
    expire = datetime.now(timezone.utc) + expires_delta
    to_encode = {"sub": str(user_id), "role": role, "exp": expire}
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
