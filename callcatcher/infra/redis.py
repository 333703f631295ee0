"""
Shared Redis connection.

Call sessions, per-call locks and slot holds live here when the redis
state backend is selected. A caller is on the line while we talk to
Redis, so a failed connect is remembered for a short cooldown instead of
paying the connect timeout again on every turn.
"""

import logging
import time
from typing import Optional

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import RedisError

from callcatcher.config import settings

logger = logging.getLogger(__name__)

# Namespace for every key this service writes
APP_PREFIX = "callcatcher:v1:"

RECONNECT_COOLDOWN_SECONDS = 30.0


def namespaced(*parts: str) -> str:
    """Build a key under the service prefix: ``namespaced("hold", id)``."""
    return APP_PREFIX + ":".join(parts)


class RedisClient:
    """Lazily connected client shared by the whole process."""

    _client: Optional[Redis] = None
    _retry_after: float = 0.0

    @classmethod
    async def get_client(cls) -> Optional[Redis]:
        """Return the live client, or None while Redis is unreachable."""
        if cls._client is not None:
            return cls._client
        if time.monotonic() < cls._retry_after:
            return None

        client = redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=2.0,
            socket_timeout=2.0,
            retry=Retry(ExponentialBackoff(cap=1.0), retries=2),
        )
        try:
            await client.ping()
        except RedisError as e:
            cls._retry_after = time.monotonic() + RECONNECT_COOLDOWN_SECONDS
            logger.error(
                f"Redis unreachable at {settings.redis_url}: {e}; "
                f"retrying in {RECONNECT_COOLDOWN_SECONDS:.0f}s"
            )
            await client.aclose()
            return None

        cls._client = client
        logger.info("Redis connection established")
        return client

    @classmethod
    async def close(cls) -> None:
        if cls._client is None:
            return
        try:
            await cls._client.aclose()
        except RedisError as e:
            logger.error(f"Error closing Redis connection: {e}")
        finally:
            cls._client = None
            cls._retry_after = 0.0


async def get_redis() -> Optional[Redis]:
    """Shared client, or None so callers can degrade to process memory."""
    return await RedisClient.get_client()


async def check_redis_health() -> bool:
    client = await get_redis()
    if client is None:
        return False
    try:
        await client.ping()
    except RedisError as e:
        logger.error(f"Redis health check failed: {e}")
        return False
    return True
