"""
Shared Redis connection - queue wake-up notifications, worker heartbeats,
and alert cooldowns. Redis is never the source of truth for jobs.
"""
import logging

logger = logging.getLogger(__name__)

# Redis client (lazily initialized)
_redis_client = None


async def get_redis():
    """Get or create Redis connection."""
    global _redis_client
    if _redis_client is None:
        import redis.asyncio as aioredis
        from payhook.config import get_settings
        _redis_client = aioredis.from_url(
            get_settings().redis_url,
            decode_responses=True,
        )
    return _redis_client


async def close_redis() -> None:
    """Close the shared connection pool on shutdown."""
    global _redis_client
    if _redis_client is None:
        return
    try:
        await _redis_client.aclose()
    except Exception as e:
        logger.warning("Redis close failed: %s", str(e))
    finally:
        _redis_client = None
