"""
Shared async Redis connection for the rate-limit store.

Only used when RATE_LIMIT_BACKEND=redis; limits then hold across every API
instance and the Celery workers instead of per process.
"""
import asyncio
from typing import Optional
from urllib.parse import urlparse

import redis.asyncio as aioredis

from bakery_orders.core.config import settings
from bakery_orders.core.logging import get_logger

logger = get_logger(__name__)

_client: Optional[aioredis.Redis] = None
_lock = asyncio.Lock()


def redacted_url(url: str) -> str:
    parsed = urlparse(url)
    if not parsed.password:
        return url
    return url.replace(f":{parsed.password}@", ":****@", 1)


async def get_redis() -> aioredis.Redis:
    global _client
    if _client is None:
        async with _lock:
            if _client is None:
                client = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
                await client.ping()
                _client = client
                logger.info("Connected to Redis", extra_data={"url": redacted_url(settings.REDIS_URL)})
    return _client


async def close_redis() -> None:
    """Called on app shutdown and at the end of every Celery run"""
    global _client
    client, _client = _client, None
    if client is not None:
        await client.aclose()
