# config/cache.py
import logging
from typing import Optional
from redis.asyncio import Redis, from_url
from config.settings import settings

logger = logging.getLogger(__name__)

# One client per process; repositories, the rate limiter and the status store share it.
_client: Optional[Redis] = None


async def get_redis() -> Redis:
    global _client
    if _client is None:
        client = from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=False,  # repositories decode JSON fields themselves
            socket_keepalive=True,
            health_check_interval=30,
        )
        # Fail fast on startup if Redis is unreachable.
        await client.ping()
        _client = client
        logger.info("redis.connected")
    return _client


async def redis_alive() -> bool:
    """Liveness probe used by /healthz; never raises."""
    try:
        r = await get_redis()
        return bool(await r.ping())
    except Exception as exc:
        logger.warning("redis.ping.error err=%s", type(exc).__name__)
        return False


async def close_redis() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
        logger.info("redis.closed")
