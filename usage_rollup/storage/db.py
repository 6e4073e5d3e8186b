"""
Counter store connection management.

Provides the redis client the usage counters are read from.
"""

import redis

DEFAULT_REDIS_URL = "redis://localhost:6379/0"
DEFAULT_TIMEOUT_SECONDS = 5.0


def get_client(
    url: str = DEFAULT_REDIS_URL,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
) -> redis.Redis:
    """Create a redis client returning str values.

    The socket timeout bounds every round trip, so a hung store surfaces as
    a timeout error instead of blocking the caller.

    Args:
        url: Redis connection URL
        timeout_seconds: Connect and read timeout per round trip

    Returns:
        Redis client with response decoding enabled
    """
    return redis.Redis.from_url(
        url,
        decode_responses=True,
        socket_timeout=timeout_seconds,
        socket_connect_timeout=timeout_seconds,
    )
