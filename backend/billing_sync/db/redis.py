"""Redis client for the optional status push channel.

Redis only carries the pub/sub messages behind the status stream. The store
never depends on it, so a failed connection leaves the channel disabled
instead of stopping the service.
"""

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

from billing_sync.core.config import get_settings

logger = structlog.get_logger(__name__)

# Startup must not hang on an unreachable broker
_CONNECT_TIMEOUT_SECONDS = 2.0

_redis: redis.Redis | None = None


async def init_redis(url: str | None = None) -> bool:
    """Connect the push channel. Returns False, with the channel disabled, on failure."""
    global _redis

    if _redis is not None:
        return True

    client = redis.from_url(
        url or get_settings().redis_url,
        decode_responses=True,
        socket_connect_timeout=_CONNECT_TIMEOUT_SECONDS,
    )
    try:
        await client.ping()
    except (RedisError, OSError) as exc:
        await client.aclose()
        logger.warning("push_channel_disabled", error=str(exc), error_type=type(exc).__name__)
        return False

    _redis = client
    logger.info("push_channel_connected")
    return True


async def close_redis() -> None:
    global _redis

    if _redis is not None:
        client, _redis = _redis, None
        await client.aclose()


def get_optional_redis() -> redis.Redis | None:
    """The connected client, or None when the push channel is disabled."""
    return _redis
