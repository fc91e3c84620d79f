"""
Health and readiness checks for the audit service.
"""

import logging
from typing import List

import redis.asyncio as redis
from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from config import settings
from database import engine

router = APIRouter()
logger = logging.getLogger(__name__)


async def _database_state() -> str:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return "up"
    except (SQLAlchemyError, OSError) as e:
        logger.warning(f"Database health check failed: {e}")
        return f"down: {e}"


async def _queue_state() -> str:
    # Redis only backs the audit queue and worker locks
    if not settings.AUDIT_QUEUE_ENABLED:
        return "disabled"
    client = redis.from_url(settings.REDIS_URL)
    try:
        await client.ping()
        return "up"
    except (redis.RedisError, OSError) as e:
        logger.warning(f"Audit queue health check failed: {e}")
        return f"down: {e}"
    finally:
        await client.aclose()


def missing_credentials() -> List[str]:
    """Provider credentials an audit run needs that are not configured."""
    missing = []
    if not settings.YOUTUBE_API_KEY.strip():
        missing.append("YOUTUBE_API_KEY")
    if not settings.OPENAI_API_KEY.strip():
        missing.append("OPENAI_API_KEY")
    return missing


@router.get("/health")
async def health_check():
    """Overall service health. Degraded when storage or the queue is unreachable."""
    database = await _database_state()
    queue = await _queue_state()
    missing = missing_credentials()

    degraded = database != "up" or queue.startswith("down")
    return {
        "status": "degraded" if degraded else "healthy",
        "api": "up",
        "database": database,
        "audit_queue": queue,
        "youtube_api_key": "missing" if "YOUTUBE_API_KEY" in missing else "configured",
        "openai_api_key": "missing" if "OPENAI_API_KEY" in missing else "configured",
    }


@router.get("/health/ready")
async def readiness_check():
    """Ready once every provider credential an audit needs is configured."""
    missing = missing_credentials()
    if missing:
        return JSONResponse(status_code=503, content={"ready": False, "missing": missing})
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    return {"alive": True}
