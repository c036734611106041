"""Redis client factory - IP reputation, attempt counters and real-time fan-out"""

import redis
from auction_gateway.config import settings

_redis_client: redis.Redis | None = None


def get_redis() -> redis.Redis:
    """Get or create the shared Redis connection pool"""
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
    return _redis_client


def close_redis() -> None:
    global _redis_client
    if _redis_client is not None:
        _redis_client.close()
        _redis_client = None
