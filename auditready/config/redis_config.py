"""Redis connection for the MFA attempt limiter."""

import redis.asyncio as redis
from redis.asyncio import ConnectionPool
from typing import Optional

from .settings import REDIS_URL, REDIS_PASSWORD, REDIS_MAX_CONNECTIONS, REDIS_KEY_PREFIX

# Shared across requests; created on first use
_redis_pool: Optional[ConnectionPool] = None
_redis_client: Optional[redis.Redis] = None


async def get_redis_client() -> redis.Redis:
    """Get the shared Redis client, opening the pool on first use."""
    global _redis_pool, _redis_client
    if _redis_client is None:
        _redis_pool = ConnectionPool.from_url(
            REDIS_URL,
            password=REDIS_PASSWORD,
            max_connections=REDIS_MAX_CONNECTIONS,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
            health_check_interval=30
        )
        _redis_client = redis.Redis(connection_pool=_redis_pool)
    return _redis_client


async def close_redis_connections():
    """Close the client and its pool."""
    global _redis_client, _redis_pool

    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None

    if _redis_pool:
        await _redis_pool.aclose()
        _redis_pool = None


async def ping_redis() -> bool:
    """True when the attempt limiter store answers."""
    try:
        client = await get_redis_client()
        return bool(await client.ping())
    except (redis.RedisError, OSError):
        return False


class RedisKeyBuilder:
    """Keys for attempt windows and lockouts, namespaced per limit type."""

    def __init__(self, prefix: str = REDIS_KEY_PREFIX):
        self.prefix = prefix

    def attempts_key(self, limit_type: str, identifier: str) -> str:
        """Sorted set of recent attempts, scored by timestamp."""
        return f"{self.prefix}:attempts:{limit_type}:{identifier}"

    def lockout_key(self, limit_type: str, identifier: str) -> str:
        """Present while the identifier is locked out."""
        return f"{self.prefix}:lockout:{limit_type}:{identifier}"
