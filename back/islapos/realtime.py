"""
Best-effort order fan-out over Redis pub/sub.

Subscribers listen on `orders:restaurant:{restaurant_id}`. Publishing is
disabled when REDIS_URL is unset; a broken connection never fails a request.
"""

import json
import logging
from typing import Any

import redis

from .settings import settings

logger = logging.getLogger(__name__)

redis_client: redis.Redis | None = None


def get_redis() -> redis.Redis | None:
    global redis_client
    if redis_client is None and settings.redis_url:
        try:
            redis_client = redis.from_url(settings.redis_url)
            redis_client.ping()
        except redis.RedisError as exc:
            logger.warning("Redis unavailable at startup: %s", exc)
            redis_client = None
    return redis_client


def channel_for(restaurant_id: str) -> str:
    return f"orders:restaurant:{restaurant_id}"


def publish_order_update(restaurant_id: str, order_data: dict[str, Any]) -> None:
    r = get_redis()
    if r is None:
        return
    try:
        r.publish(channel_for(restaurant_id), json.dumps(order_data, default=str))
    except redis.RedisError as exc:
        logger.warning("Failed to publish order update for restaurant %s: %s", restaurant_id, exc)
