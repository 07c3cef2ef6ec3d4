"""Liveness and readiness checks."""

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from billing_sync.db.base import get_session_factory
from billing_sync.db.redis import get_optional_redis

logger = structlog.get_logger(__name__)

router = APIRouter()

SERVICE = "billing-sync"


@router.get("/health")
async def health_check(request: Request):
    """Liveness for the load balancer; 503 once SIGTERM starts the drain."""
    if getattr(request.app.state, "shutting_down", False):
        return JSONResponse(status_code=503, content={"status": "shutting_down", "service": SERVICE})
    return {"status": "healthy", "service": SERVICE}


async def _database_ok() -> bool:
    try:
        async with get_session_factory()() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("readiness_database_failed", error=str(e), error_type=type(e).__name__)
        return False
    return True


async def _push_channel_state() -> str:
    redis = get_optional_redis()
    if redis is None:
        return "disabled"
    try:
        await redis.ping()
    except Exception as e:
        logger.warning("readiness_redis_failed", error=str(e), error_type=type(e).__name__)
        return "unreachable"
    return "ok"


@router.get("/ready")
async def readiness_check():
    """Ready when the subscription store answers.

    Redis only backs the optional status stream, so its state is reported
    but never makes the service unready.
    """
    database_ok = await _database_ok()
    checks = {"database": database_ok, "push_channel": await _push_channel_state()}
    return JSONResponse(
        status_code=200 if database_ok else 503,
        content={"status": "ready" if database_ok else "degraded", "checks": checks},
    )
