"""
Shared Redis client accessor.

Redis is optional: price caching and leaderboard fan-out degrade to
database reads when it is not configured.
"""

import json
import logging
from typing import Any, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

_redis_client: Optional[aioredis.Redis] = None

PRICE_UPDATES_CHANNEL = "price_updates"


def leaderboard_channel(contest_id) -> str:
    return f"leaderboard:{contest_id}"


def price_key(asset_id) -> str:
    return f"price:{asset_id}"


async def init_redis(url: str) -> aioredis.Redis:
    """Initialize the shared Redis connection. Called once during app lifespan startup."""
    global _redis_client
    _redis_client = aioredis.from_url(url, encoding="utf-8", decode_responses=False)
    await _redis_client.ping()
    return _redis_client


def get_redis_client() -> Optional[aioredis.Redis]:
    """Get the shared Redis client. Returns None if not initialized."""
    return _redis_client


async def publish_json(redis: Optional[aioredis.Redis], channel: str, payload: Any) -> bool:
    """
    Best-effort publish. Delivery is at-most-once: a Redis failure is logged
    and reported as False, never raised to the producer.
    """
    if redis is None:
        return False
    try:
        await redis.publish(channel, json.dumps(payload, default=str))
        return True
    except RedisError as e:
        logger.warning(f"Publish to {channel} failed: {e}")
        return False


async def close_redis() -> None:
    """Close the shared Redis connection. Called during app lifespan shutdown."""
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None
