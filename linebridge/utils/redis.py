"""
Shared async Redis connection - worker heartbeats and readiness checks.
Redis is never on the ack path: every caller degrades when it is down.
"""
import logging
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

HEARTBEAT_KEY_PREFIX = "linebridge:worker_health:"

# Redis client (lazily initialized)
_redis_client = None


async def get_redis():
    """Get or create Redis connection."""
    global _redis_client
    if _redis_client is None:
        import redis.asyncio as aioredis
        from linebridge.config import get_settings
        _redis_client = aioredis.from_url(
            get_settings().redis_url,
            decode_responses=True,
        )
    return _redis_client


async def write_heartbeat(worker_name: str, ttl_seconds: int) -> None:
    """Store a heartbeat timestamp for a background worker."""
    try:
        redis = await get_redis()
        await redis.set(
            f"{HEARTBEAT_KEY_PREFIX}{worker_name}",
            datetime.now(timezone.utc).isoformat(),
            ex=ttl_seconds,
        )
    except Exception as e:
        logger.debug("Heartbeat write failed for %s: %s", worker_name, str(e))
