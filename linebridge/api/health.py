"""
Health check endpoints - used by load balancers and monitoring.

- GET /health       - basic liveness (always 200 if app running)
- GET /health/ready - readiness (DB + Redis + queue depth + reaper heartbeat)
"""
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from linebridge.database import get_db
from linebridge.services.event_queue import queue_stats
from linebridge.utils.redis import HEARTBEAT_KEY_PREFIX, get_redis

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

VERSION = "1.0.0"


@router.get("/health")
async def health_check():
    """Basic liveness check - returns 200 if the app is running."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": VERSION,
    }


@router.get("/health/ready")
async def readiness_check(
    db: AsyncSession = Depends(get_db),
):
    """
    Readiness check - verifies database and Redis connectivity and reports queue depth.
    Redis is advisory: the event pipeline keeps working without it.
    """
    checks = {"database": False, "redis": False}
    queue = None
    reaper_heartbeat = None

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = True
        queue = await queue_stats(db)
    except Exception as e:
        logger.error("Database health check failed: %s", str(e))

    try:
        redis = await get_redis()
        await redis.ping()
        checks["redis"] = True
        reaper_heartbeat = await redis.get(f"{HEARTBEAT_KEY_PREFIX}event_reaper")
    except Exception as e:
        logger.warning("Redis health check failed: %s", str(e))

    return {
        "status": "ready" if checks["database"] else "degraded",
        "checks": checks,
        "queue": queue,
        "workers": {"event_reaper": reaper_heartbeat},
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
