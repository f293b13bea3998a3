# app/attendance/api/utilities/limiter.py

from fastapi import Request
import jwt

from slowapi import Limiter
from slowapi.util import get_remote_address

from ...config.config import settings


def get_limiter_key(request: Request) -> str:
    """
    Rate limit key: the JWT subject when the request carries a decodable
    token, the client address otherwise.
    """
    auth_header = request.headers.get("authorization")
    if auth_header and auth_header.lower().startswith("bearer "):
        token = auth_header.split(" ")[1]
        try:
            # Expiry is irrelevant here, only the identity is needed.
            payload = jwt.decode(
                token,
                settings.SECRET_KEY,
                algorithms=[settings.ALGORITHM],
                options={"verify_exp": False}
            )
            subject = payload.get("sub")
            if subject:
                return subject
        except jwt.PyJWTError:
            pass

    return get_remote_address(request)


limiter = Limiter(key_func=get_limiter_key, storage_uri=settings.RATE_LIMITER_REDIS_URL or "memory://")
