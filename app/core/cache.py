import json
from typing import Any, Optional

import structlog
from redis import asyncio as aioredis
from redis.exceptions import RedisError

from app.config import get_settings

settings = get_settings()

redis_client: Optional[aioredis.Redis] = None

ACTIVE_EXPERIMENTS_KEY = "experiments:active"


def experiment_key(experiment_id: str) -> str:
    return f"experiment:{experiment_id}"


def assignment_key(experiment_id: str, user_id: str) -> str:
    return f"assignment:{experiment_id}:{user_id}"


def assignment_pattern(experiment_id: str) -> str:
    return f"assignment:{experiment_id}:*"


async def get_redis() -> aioredis.Redis:
    """Get Redis client"""
    global redis_client
    if redis_client is None:
        redis_client = await aioredis.from_url(
            settings.REDIS_URL,
            password=settings.REDIS_PASSWORD if settings.REDIS_PASSWORD else None,
            encoding="utf-8",
            decode_responses=True,
        )
    return redis_client


async def close_redis():
    """Close Redis connection"""
    global redis_client
    if redis_client:
        await redis_client.close()
        redis_client = None


class ExperimentCache:
    """
    Read-through cache in front of the experiment store.

    Never a source of truth: every failure is logged and reported as a miss,
    and a cache built without a client misses on every read.
    """

    def __init__(self, client: Optional[aioredis.Redis], logger=None):
        self.redis = client
        self.logger = logger or structlog.get_logger("cache")

    async def get(self, key: str) -> Optional[Any]:
        if self.redis is None:
            return None
        try:
            raw = await self.redis.get(key)
        except (RedisError, OSError) as e:
            self.logger.warning("cache_get_failed", key=key, error=str(e))
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            self.logger.warning("cache_value_corrupt", key=key)
            return None

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.set(key, json.dumps(value, default=str), ex=ttl_seconds)
        except (RedisError, OSError) as e:
            self.logger.warning("cache_set_failed", key=key, error=str(e))

    async def invalidate(self, *keys: str) -> None:
        if self.redis is None or not keys:
            return
        try:
            await self.redis.delete(*keys)
        except (RedisError, OSError) as e:
            self.logger.warning("cache_invalidate_failed", keys=list(keys), error=str(e))

    async def invalidate_pattern(self, pattern: str) -> None:
        if self.redis is None:
            return
        try:
            keys = [key async for key in self.redis.scan_iter(match=pattern)]
            if keys:
                await self.redis.delete(*keys)
        except (RedisError, OSError) as e:
            self.logger.warning("cache_invalidate_failed", pattern=pattern, error=str(e))


async def get_experiment_cache() -> ExperimentCache:
    """Dependency for the experiment cache; degrades to a no-op cache when disabled."""
    if not settings.CACHE_ENABLED:
        return ExperimentCache(None)
    return ExperimentCache(await get_redis())
