# app/attendance/main.py
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import redis.asyncio as redis
import asyncpg
from apscheduler.schedulers.asyncio import AsyncIOScheduler as Scheduler
import logging

from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from .config.config import settings
from .logging.logging_config import setup_logging
from .api import teacher, student
from .db.db_client import AsyncPostgresClient
from .tasks.cron import purge_expired_qr_tokens_task
from .api.utilities.limiter import limiter

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Creates the shared PostgreSQL and Redis pools and the housekeeping
    scheduler on startup, and releases them on shutdown.
    """
    setup_logging()

    logger.info("Starting application...")

    try:
        postgres_pool = await asyncpg.create_pool(
            dsn=settings.DATABASE_URL, min_size=5, max_size=20
        )
        redis_pool = redis.ConnectionPool.from_url(
            settings.APPLICATION_REDIS_URL, decode_responses=True
        )

        app.state.postgres_pool = postgres_pool
        app.state.redis_pool = redis_pool
        logger.info("PostgreSQL and Redis connection pools created.")

        db_client = AsyncPostgresClient(pool=postgres_pool)

        scheduler = Scheduler()
        scheduler.add_job(
            purge_expired_qr_tokens_task,
            "interval",
            minutes=settings.TOKEN_PURGE_INTERVAL_MINUTES,
            args=[db_client],
            id="purge_expired_qr_tokens"
        )
        scheduler.start()

        app.state.scheduler = scheduler
        logger.info("Scheduled jobs started.")

    except Exception as e:
        logger.error(f"Startup failed: {e}", exc_info=True)
        app.state.postgres_pool = None
        app.state.redis_pool = None
        app.state.scheduler = None

    yield

    logger.info("Shutting down application...")
    if getattr(app.state, 'scheduler', None):
        app.state.scheduler.shutdown()
        logger.info("Scheduler stopped.")
    if getattr(app.state, 'postgres_pool', None):
        await app.state.postgres_pool.close()
        logger.info("PostgreSQL connection pool closed.")
    if getattr(app.state, 'redis_pool', None):
        await app.state.redis_pool.disconnect()
        logger.info("Redis connection pool closed.")


app = FastAPI(
    title="Campus Attendance API",
    description="Multi-factor attendance verification: face, WebAuthn biometrics, geofencing and rotating QR.",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.include_router(teacher.router, prefix="/api/v1")
app.include_router(student.router, prefix="/api/v1")


@app.get("/health", tags=["System"])
def health_check():
    """Health check for load balancers."""
    return {"status": "ok", "message": "Campus Attendance API is running."}
