"""
Admin / observability endpoints
===============================

GET /api/v1/admin/health -- database and Redis reachability
"""

import logging

from fastapi import APIRouter, Depends
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from cabbooking.api.dependencies import get_db
from cabbooking.api.schemas import HealthResponse
from cabbooking.infrastructure.redis_client import get_redis

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health(
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    result = HealthResponse()
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        result.database = "unavailable"
    try:
        await redis.ping()
    except RedisError:
        logger.warning("Health check: Redis unreachable", exc_info=True)
        result.redis = "unavailable"
    if result.database != "ok":
        result.status = "degraded"
    return result
