"""Health check endpoints for load balancers and monitoring."""

from datetime import datetime

import redis.asyncio as redis
from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from worktally.config import settings
from worktally.database import get_session_factory
from worktally.utils.redis_pool import get_redis

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Liveness only: no DB or Redis round-trip."""
    return {
        "status": "ok",
        "service": "WorkTally",
        "timestamp": datetime.utcnow().isoformat(),
        "environment": settings.environment,
    }


@router.get("/health/ready")
async def readiness_check(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    redis_client: redis.Redis = Depends(get_redis),
):
    """Readiness: 200 only when the database and Redis both answer."""
    checks = {"service": "ok", "database": "unknown", "redis": "unknown"}

    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as e:
        checks["database"] = f"error: {str(e)[:100]}"

    try:
        await redis_client.ping()
        checks["redis"] = "ok"
    except Exception as e:
        checks["redis"] = f"error: {str(e)[:100]}"

    healthy = all(value == "ok" for value in checks.values())
    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "service": "WorkTally",
            "checks": checks,
            "timestamp": datetime.utcnow().isoformat(),
        },
    )
