"""Health check endpoints."""

from datetime import datetime, timezone
from typing import Any

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cart_recovery import __version__
from cart_recovery.config import Settings, get_settings
from cart_recovery.infrastructure.database.connection import get_session_factory
from cart_recovery.infrastructure.redis import get_redis_client

router = APIRouter()
logger = structlog.get_logger()


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    version: str
    environment: str
    timestamp: str
    dependencies: dict[str, Any]


class ReadinessResponse(BaseModel):
    """Readiness check response model."""

    ready: bool
    checks: dict[str, bool]


async def database_available(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> bool:
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning("Database readiness check failed", error=str(e))
        return False


async def redis_available() -> bool:
    client = await get_redis_client()
    if client is None:
        return False
    try:
        return bool(await client.ping())
    except Exception:
        return False


@router.get("/health", response_model=HealthResponse)
async def health_check(settings: Settings = Depends(get_settings)) -> HealthResponse:
    """
    Basic health check endpoint.

    Returns the service status and version information.
    This endpoint is used by load balancers and orchestrators
    to determine if the service is running.
    """
    return HealthResponse(
        status="healthy",
        version=__version__,
        environment=settings.app_env,
        timestamp=datetime.now(timezone.utc).isoformat(),
        dependencies={
            "database": "configured",
            "redis": "configured",
            "email": settings.email_service,
            "scheduler": settings.scheduler_backend,
        },
    )


@router.get("/health/ready", response_model=ReadinessResponse)
async def readiness_check(
    database_ok: bool = Depends(database_available),
    redis_ok: bool = Depends(redis_available),
) -> ReadinessResponse:
    """
    Readiness check endpoint.

    Only the database gates readiness; without Redis the jobs simply run
    without cross-instance tick locks.
    """
    return ReadinessResponse(
        ready=database_ok,
        checks={"database": database_ok, "redis": redis_ok},
    )


@router.get("/health/live")
async def liveness_check() -> dict[str, str]:
    """
    Liveness check endpoint.

    Simple endpoint that returns 200 if the service is running.
    This endpoint is used for Kubernetes liveness checks.
    """
    return {"status": "alive"}
