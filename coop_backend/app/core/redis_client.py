"""
Redis client and connection management.

Redis holds short-lived gateway state (the MoMo access token). It is an
optimisation only: when it is down the gateway fetches a fresh token and
the health check reports ``degraded``.
"""

import logging

import redis.asyncio as redis
from redis.exceptions import RedisError
from coop_backend.app.core.config import settings

logger = logging.getLogger(__name__)


redis_client = redis.from_url(
    settings.redis_url,
    decode_responses=settings.redis_decode_responses,
)


async def get_redis():
    """FastAPI dependency returning the shared client."""
    return redis_client


async def ping_redis() -> bool:
    """
    Test Redis connection.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        return bool(await redis_client.ping())
    except (RedisError, OSError) as e:
        logger.warning("Redis ping failed: %s", e)
        return False


async def close_redis() -> None:
    await redis_client.aclose()
