from fastapi import APIRouter, Depends
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.cache import ExperimentCache, get_experiment_cache
from app.core.database import get_db

router = APIRouter()


@router.get("/health")
async def health_check():
    """Basic health check"""
    return {"status": "healthy", "service": "experiments-api"}


@router.get("/health/db")
async def health_check_db(db: AsyncSession = Depends(get_db)):
    """Experiment store health check"""
    try:
        await db.execute(text("SELECT 1"))
        return {"status": "healthy", "database": "connected"}
    except (SQLAlchemyError, OSError) as e:
        return {"status": "unhealthy", "database": "disconnected", "error": str(e)}


@router.get("/health/cache")
async def health_check_cache(cache: ExperimentCache = Depends(get_experiment_cache)):
    """Cache health check; an unavailable cache degrades reads but is not fatal"""
    if cache.redis is None:
        return {"status": "healthy", "cache": "disabled"}
    try:
        await cache.redis.ping()
        return {"status": "healthy", "cache": "connected"}
    except (RedisError, OSError) as e:
        return {"status": "degraded", "cache": "disconnected", "error": str(e)}
