import time
import logging
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text

from app.db.database import get_db_session
from app.core.cache import get_cache
from app.core.circuit_breaker import get_all_circuit_metrics

logger = logging.getLogger(__name__)

router = APIRouter()

# Consider a background service unhealthy if no heartbeat in 5 minutes
HEARTBEAT_STALE_SECONDS = 300


@router.get("/")
async def root_health_check():
    return {"status": "ok"}


@router.get("/db")
async def db_health_check(session: AsyncSession = Depends(get_db_session)):
    try:
        await session.execute(text("SELECT 1"))
        return {"status": "ok", "database": "connected"}
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Database connection failed: {e}",
        )


@router.get("/redis")
async def redis_health_check():
    """Check Redis connection status."""
    try:
        cache = await get_cache()
        if not cache.is_connected:
            return {"status": "unavailable", "redis": "not connected"}
        if await cache.ping():
            return {"status": "ok", "redis": "connected"}
        return {"status": "degraded", "redis": "connected but ping failed"}
    except Exception as e:
        logger.error(f"Redis health check failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Redis connection failed: {e}",
        )


@router.get("/reconciler")
async def reconciler_health_check(request: Request):
    """
    Health of the boost queue reconciler. The in-process task state is
    authoritative; the Redis heartbeat is reported when available.
    """
    reconciler = getattr(request.app.state, "boost_queue_reconciler", None)
    if reconciler is None:
        return {"status": "not_started", "healthy": False}

    result = {
        "status": "ok" if reconciler.is_running else "stopped",
        "healthy": reconciler.is_running,
        "metrics": reconciler.get_status(),
        "last_heartbeat_seconds_ago": None,
    }

    cache = await get_cache()
    heartbeat = await cache.get_service_health(reconciler.SERVICE_NAME)
    if heartbeat:
        seconds_since = time.time() - heartbeat.get("last_heartbeat", 0)
        result["last_heartbeat_seconds_ago"] = round(seconds_since, 1)
        if seconds_since >= HEARTBEAT_STALE_SECONDS:
            result["healthy"] = False
            result["status"] = "degraded"

    return result


@router.get("/comprehensive")
async def comprehensive_health_check(request: Request, session: AsyncSession = Depends(get_db_session)):
    """
    Comprehensive health check including database, Redis, the reconciler and
    the payment gateway circuit breakers.
    """
    result = {
        "status": "ok",
        "timestamp": time.time(),
        "components": {}
    }

    overall_healthy = True

    # Check database
    try:
        await session.execute(text("SELECT 1"))
        result["components"]["database"] = {"status": "ok", "healthy": True}
    except Exception as e:
        overall_healthy = False
        result["components"]["database"] = {"status": "error", "healthy": False, "error": str(e)}

    # Check Redis
    try:
        cache = await get_cache()
        if cache.is_connected:
            result["components"]["redis"] = {"status": "ok", "healthy": True}
        else:
            # Redis being unavailable is degraded, not failed
            result["components"]["redis"] = {"status": "unavailable", "healthy": False}
    except Exception as e:
        result["components"]["redis"] = {"status": "error", "healthy": False, "error": str(e)}

    reconciler = await reconciler_health_check(request)
    result["components"]["reconciler"] = reconciler
    if not reconciler.get("healthy"):
        overall_healthy = False

    circuits = get_all_circuit_metrics()
    result["components"]["payment_circuits"] = circuits
    if any(metrics.get("state") == "open" for metrics in circuits.values()):
        overall_healthy = False

    result["status"] = "ok" if overall_healthy else "degraded"

    return result
