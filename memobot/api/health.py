"""Health check endpoints."""
from fastapi import APIRouter
from redis import Redis
from sqlalchemy import text

from memobot.config import settings
from memobot.models.database import create_db_engine

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check() -> dict:
    """Basic health check."""
    return {"status": "ok"}


@router.get("/health/detailed")
async def detailed_health_check() -> dict:
    """Detailed health check including Redis and database status."""
    redis_status = "unknown"
    database_status = "unknown"

    try:
        redis_conn = Redis(
            host=settings.REDIS_HOST,
            port=settings.REDIS_PORT,
            db=settings.REDIS_DB,
        )
        redis_conn.ping()
        redis_status = "connected"
    except Exception as e:
        redis_status = f"error: {str(e)}"

    try:
        engine = create_db_engine(settings.DATABASE_URL)
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        engine.dispose()
        database_status = "connected"
    except Exception as e:
        database_status = f"error: {str(e)}"

    healthy = redis_status == "connected" and database_status == "connected"
    return {
        "status": "ok" if healthy else "degraded",
        "redis": redis_status,
        "database": database_status,
    }
