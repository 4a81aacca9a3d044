"""
Liveness and readiness endpoints.
"""

import time

from fastapi import APIRouter, Request

from app.config import settings
from app.db.pool import db_health_check
from app.infrastructure.observability.logging import log_health_check
from app.services.redis_client import fast_redis

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "webinar-sync"}


@router.get("/readyz")
async def readyz(request: Request):
    """Readiness check covering Redis, the database pool and the sync services."""
    checks = {}
    overall_ok = True

    # Redis only carries progress telemetry, so a failure degrades rather than blocks
    t0 = time.time()
    redis_ok = await fast_redis.ping()
    checks["redis"] = {
        "ok": redis_ok,
        "latency_ms": round((time.time() - t0) * 1000, 1),
        "required": False,
    }
    log_health_check("redis", redis_ok, checks["redis"]["latency_ms"])

    t0 = time.time()
    db_health = await db_health_check()
    is_healthy = bool(db_health.get("healthy", False))
    checks["database"] = {
        "ok": is_healthy,
        "latency_ms": round((time.time() - t0) * 1000, 1),
    }
    if "pool_stats" in db_health:
        checks["database"]["pool_stats"] = db_health["pool_stats"]
    if "warnings" in db_health:
        checks["database"]["warnings"] = db_health["warnings"]
    if not is_healthy:
        checks["database"]["error"] = db_health.get("error", "Database unhealthy")
    log_health_check(
        "database", is_healthy, checks["database"]["latency_ms"], checks["database"].get("error")
    )
    overall_ok = overall_ok and is_healthy

    services = getattr(request.app.state, "webinar_sync", None)
    checks["webinar_sync"] = {"ok": services is not None}
    overall_ok = overall_ok and services is not None

    config_issues = []
    if not settings.ENCRYPTION_KEY:
        config_issues.append("ENCRYPTION_KEY not set")
    if not settings.SUPABASE_DB_URL:
        config_issues.append("SUPABASE_DB_URL not set")
    checks["configuration"] = {
        "ok": not config_issues,
        "issues": config_issues or None,
        "environment": settings.environment,
        "sync": settings.get_sync_config(),
    }
    overall_ok = overall_ok and not config_issues

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}


@router.get("/health/database")
async def database_health():
    """Detailed database pool health information."""
    return await db_health_check()
