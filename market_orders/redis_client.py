"""
Redis: pub/sub channel for order transition events and SET NX idempotency keys for
payment confirmations.
"""
import logging

from pydantic import BaseModel
import redis.asyncio as redis
from redis.exceptions import RedisError

from market_orders.config import settings

logger = logging.getLogger(__name__)

_redis: redis.Redis | None = None


class OrderTransitioned(BaseModel):
    order_id: str
    order_number: str
    from_status: str
    to_status: str
    actor_id: str
    actor_role: str
    override: bool = False


async def get_redis() -> redis.Redis:
    global _redis
    if _redis is None:
        _redis = redis.from_url(settings.redis_url, decode_responses=True)
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


async def check_idempotency(key: str, ttl_seconds: int | None = None) -> bool:
    """
    Returns True if this key was already seen (duplicate) -> caller should not repeat the work.
    Returns False if key is new. Uses SET NX: if we set it, we're first.
    """
    r = await get_redis()
    ttl = ttl_seconds or settings.payment_idempotency_ttl_seconds
    was_set = await r.set(key, "1", nx=True, ex=ttl)
    return not was_set


async def release_idempotency(key: str) -> None:
    """Forget a key so a failed attempt can be retried."""
    r = await get_redis()
    await r.delete(key)


async def publish_event(event: OrderTransitioned) -> None:
    """Fire-and-forget publish; a lost notification never fails the transition."""
    try:
        r = await get_redis()
        await r.publish(settings.order_events_channel, event.model_dump_json())
    except (RedisError, OSError):
        logger.warning("Failed to publish transition for order_id=%s", event.order_id, exc_info=True)
