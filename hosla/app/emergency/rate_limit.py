"""
rate_limit.py — Per-originator alert creation gate.

Fixed-window counter: at most ``limit`` alert creations per originator per
``window_seconds``. The counter lives in Redis so every process instance
sees the same count:

    key     emergency:ratelimit:{originator_id}:{window_index}
    INCR    on every attempt
    EXPIRE  set when the key is created (count == 1)

When Redis cannot be reached the gate admits the request and logs a
warning; the alert itself is never lost because of the counter store.
Test alerts do not pass through the gate.
"""

from __future__ import annotations

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Awaitable, Callable, Dict, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from hosla.app.core.cache import get_redis
from hosla.app.core.errors import RateLimitedError
from hosla.app.emergency.models import _now

logger = logging.getLogger(__name__)

KEY_PREFIX = "emergency:ratelimit"


class CounterStore(ABC):
    """Shared counters with expiry."""

    @abstractmethod
    async def increment(self, key: str, ttl_seconds: int) -> int:
        """Increment ``key`` and return the new count; new keys expire after ``ttl_seconds``."""


class InMemoryCounterStore(CounterStore):
    """Process-local counters for tests and single-process development."""

    def __init__(self, clock: Callable[[], datetime] = _now):
        self._counts: Dict[str, Tuple[int, float]] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    async def increment(self, key: str, ttl_seconds: int) -> int:
        now = self._clock().timestamp()
        async with self._lock:
            # Drop windows that have closed so old keys do not pile up
            for stale in [k for k, (_, exp) in self._counts.items() if exp <= now]:
                del self._counts[stale]
            count, expires_at = self._counts.get(key, (0, now + ttl_seconds))
            count += 1
            self._counts[key] = (count, expires_at)
            return count

    @property
    def active_keys(self) -> int:
        return len(self._counts)

    def clear(self) -> None:
        self._counts.clear()


class RedisCounterStore(CounterStore):
    """INCR + EXPIRE on the shared Redis instance."""

    def __init__(
        self,
        client_factory: Callable[[], Awaitable[Optional[aioredis.Redis]]] = get_redis,
    ):
        self._client_factory = client_factory

    async def increment(self, key: str, ttl_seconds: int) -> int:
        client = await self._client_factory()
        if client is None:
            raise ConnectionError("Redis client unavailable")
        count = await client.incr(key)
        if count == 1:
            await client.expire(key, ttl_seconds)
        return int(count)


class AlertCreationGate:
    """
    Admits or rejects alert creation for an originator.

    Usage:
        gate = AlertCreationGate(RedisCounterStore(), limit=3, window_seconds=300)
        await gate.check("user-1")   # raises RateLimitedError when over the limit
    """

    def __init__(
        self,
        counters: CounterStore,
        *,
        limit: int = 3,
        window_seconds: int = 300,
        clock: Callable[[], datetime] = _now,
    ):
        self.counters = counters
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock

    def _window(self) -> Tuple[int, int]:
        """(window index, seconds until the window closes)."""
        ts = self._clock().timestamp()
        index = int(ts // self.window_seconds)
        remaining = math.ceil((index + 1) * self.window_seconds - ts)
        return index, max(remaining, 1)

    async def check(self, originator_id: str) -> None:
        index, remaining = self._window()
        key = f"{KEY_PREFIX}:{originator_id}:{index}"
        try:
            count = await self.counters.increment(key, self.window_seconds)
        except (RedisError, ConnectionError, OSError) as exc:
            logger.warning(
                "Rate limit store unreachable, admitting alert from %s: %s",
                originator_id, exc,
                extra={"originator_id": originator_id},
            )
            return

        if count > self.limit:
            logger.warning(
                "Alert creation rate limit hit by %s (%d/%d in window)",
                originator_id, count, self.limit,
                extra={"originator_id": originator_id},
            )
            raise RateLimitedError(
                f"Too many emergency alerts. Please wait {remaining} seconds.",
                retry_after=remaining,
            )
