import os
from dotenv import load_dotenv

load_dotenv()

class Config:
    """
    Holds the service settings read straight from environment variables.
    """
    # Database
    DATABASE_URL: str = os.environ.get("DATABASE_URL")

    # Redis: application state (challenges, QR tracking) and rate limiter storage
    APPLICATION_REDIS_URL: str = os.environ.get("APPLICATION_REDIS_URL")
    RATE_LIMITER_REDIS_URL: str = os.environ.get("RATE_LIMITER_REDIS_URL")

    # JWT
    SECRET_KEY: str = os.environ.get("SECRET_KEY", "change-me")
    ALGORITHM: str = os.environ.get("ALGORITHM", "HS256")

    # Verification policy
    FACE_MATCH_THRESHOLD: float = float(os.environ.get("FACE_MATCH_THRESHOLD", 0.45))
    DEFAULT_ALLOWED_RADIUS_M: float = float(os.environ.get("DEFAULT_ALLOWED_RADIUS_M", 50))

    # Rotating QR
    QR_TOKEN_TTL_SECONDS: int = int(os.environ.get("QR_TOKEN_TTL_SECONDS", 120))
    QR_REFRESH_INTERVAL_SECONDS: int = int(os.environ.get("QR_REFRESH_INTERVAL_SECONDS", 15))

    # WebAuthn relying party
    WEBAUTHN_RP_ID: str = os.environ.get("WEBAUTHN_RP_ID", "localhost")
    WEBAUTHN_RP_NAME: str = os.environ.get("WEBAUTHN_RP_NAME", "Campus Attendance")
    WEBAUTHN_ORIGIN: str = os.environ.get("WEBAUTHN_ORIGIN", "http://localhost:5173")
    WEBAUTHN_TIMEOUT_MS: int = int(os.environ.get("WEBAUTHN_TIMEOUT_MS", 60000))
    WEBAUTHN_CHALLENGE_TTL_SECONDS: int = int(os.environ.get("WEBAUTHN_CHALLENGE_TTL_SECONDS", 300))

    # Housekeeping
    TOKEN_PURGE_RETENTION_HOURS: int = int(os.environ.get("TOKEN_PURGE_RETENTION_HOURS", 24))
    TOKEN_PURGE_INTERVAL_MINUTES: int = int(os.environ.get("TOKEN_PURGE_INTERVAL_MINUTES", 30))

# Single importable settings instance
settings = Config()
