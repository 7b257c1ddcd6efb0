"""
Health check endpoints - used by load balancers, Docker healthcheck, and monitoring.

- GET /health       - basic liveness (always 200 if app running)
- GET /health/ready - readiness check (DB + Redis + worker heartbeats)
"""
import logging
from datetime import datetime, timezone
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from payhook.database import get_db
from payhook.workers.pool import HEARTBEAT_KEY_PREFIX

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check - returns 200 if the app is running."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": "1.0.0",
    }


@router.get("/health/ready")
async def readiness_check(
    db: AsyncSession = Depends(get_db),
):
    """
    Readiness check - verifies database and Redis connectivity and that at
    least one worker process is heartbeating.
    Ingress keeps accepting webhooks without Redis or workers ("degraded");
    jobs wait in the database until a worker picks them up.
    """
    checks = {"database": False, "redis": False}

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        logger.error("Database health check failed: %s", str(e))

    try:
        from payhook.utils.redis import get_redis
        redis = await get_redis()
        await redis.ping()
        checks["redis"] = True
    except Exception as e:
        logger.warning("Redis health check failed: %s", str(e))

    workers = await _check_workers() if checks["redis"] else {
        "healthy": False, "note": "Unable to check worker heartbeats",
    }

    all_healthy = all(checks.values()) and workers["healthy"]
    return {
        "status": "ready" if all_healthy else "degraded",
        "checks": checks,
        "workers": workers,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def _check_workers() -> dict:
    """
    Live worker heartbeats in Redis. Keys expire a few poll intervals after
    the last write, so every key present belongs to a running worker.
    """
    try:
        from payhook.utils.redis import get_redis
        redis = await get_redis()

        keys = sorted(await redis.keys(f"{HEARTBEAT_KEY_PREFIX}*"))
        heartbeats = await redis.mget(keys) if keys else []
        workers = {
            key[len(HEARTBEAT_KEY_PREFIX):]: heartbeat
            for key, heartbeat in zip(keys, heartbeats)
            if heartbeat is not None
        }
        if not workers:
            logger.warning("No worker heartbeats found")
        return {"healthy": bool(workers), "workers": workers}
    except Exception as e:
        logger.warning("Worker heartbeat check failed: %s", str(e))
        return {"healthy": False, "note": "Unable to check worker heartbeats"}
