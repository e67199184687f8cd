"""
Redis layer — lazily-created async Redis client.

Redis holds state that must be shared by every process instance but is not
part of the durable alert record, currently the per-originator alert
creation counters.

Usage:
    from hosla.app.core.cache import get_redis

    client = await get_redis()
    if client is not None:
        count = await client.incr("emergency:ratelimit:u1:5867")
"""

from __future__ import annotations

import logging
from typing import Optional

import redis.asyncio as aioredis

from hosla.app.core.config import settings

logger = logging.getLogger(__name__)

# Lazy Redis client, created on first use
_redis_client: Optional[aioredis.Redis] = None


async def get_redis() -> Optional[aioredis.Redis]:
    """Get or create the async Redis client. Returns None if it cannot be built."""
    global _redis_client
    if _redis_client is None:
        try:
            _redis_client = aioredis.from_url(
                settings.REDIS_URL,
                encoding="utf-8",
                decode_responses=True,
            )
            logger.info("Redis client created: %s", _redact(settings.REDIS_URL))
        except Exception as e:
            logger.warning("Redis unavailable: %s", e)
            return None
    return _redis_client


async def ping_redis() -> bool:
    """True if Redis answers a PING."""
    client = await get_redis()
    if client is None:
        return False
    try:
        return bool(await client.ping())
    except Exception as e:
        logger.warning("Redis PING failed: %s", e)
        return False


async def close_redis() -> None:
    """Close Redis connection."""
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")


def _redact(url: str) -> str:
    return url.split("@")[-1] if "@" in url else url
