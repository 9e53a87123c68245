"""
Health check endpoints.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
import redis.asyncio as redis
from redis.exceptions import RedisError

from config import settings
from database import engine
from services.connectors import connector_capabilities

router = APIRouter()
logger = logging.getLogger(__name__)


async def _database_status() -> str:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return "up"
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("health_database_down error=%s", exc)
        return f"down: {exc}"


async def _redis_status() -> str:
    try:
        client = redis.from_url(settings.REDIS_URL)
        try:
            await client.ping()
        finally:
            await client.aclose()
        return "up"
    except (RedisError, OSError) as exc:
        return f"down: {exc}"


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    The credit store is required; Redis only backs rate limiting.
    """
    database = await _database_status()
    health_status = {
        "status": "healthy" if database == "up" else "degraded",
        "api": "up",
        "database": database,
        "redis": await _redis_status(),
        "connectors": connector_capabilities(),
    }
    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness probe."""
    missing = []
    if not (settings.PAYMENT_WEBHOOK_SECRET or "").strip():
        missing.append("PAYMENT_WEBHOOK_SECRET")
    if await _database_status() != "up":
        missing.append("DATABASE_URL")

    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
