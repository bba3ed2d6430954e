"""Health check endpoints."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from practice_os import __version__
from practice_os.core.database import get_session_factory, ping

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check() -> dict:
    """Basic health check."""
    return {
        "status": "healthy",
        "service": "practice-os",
        "version": __version__,
    }


@router.get("/health/ready")
async def readiness_check(
    factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> dict:
    """Readiness check - verifies the database is reachable."""
    try:
        await ping(factory)
    except Exception as e:
        logger.warning(f"Readiness check failed: {e}")
        return {
            "status": "not_ready",
            "errors": [f"Database check failed: {type(e).__name__}"],
        }

    return {"status": "ready", "database": "ok"}


@router.get("/health/live")
async def liveness_check() -> dict:
    """Liveness check - basic process health."""
    return {"status": "alive"}
