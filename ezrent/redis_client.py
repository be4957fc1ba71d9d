import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator

import redis.asyncio as aioredis
from ezrent.config import get_settings
from ezrent.services.errors import ConcurrentModification

settings = get_settings()
logger = logging.getLogger(__name__)

_redis_pool: aioredis.Redis | None = None

LOCK_POLL_SECONDS = 0.05


async def get_redis() -> aioredis.Redis:
    global _redis_pool
    if _redis_pool is None:
        _redis_pool = aioredis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=100,
        )
    return _redis_pool


async def close_redis() -> None:
    global _redis_pool
    if _redis_pool:
        await _redis_pool.aclose()
        _redis_pool = None


# ---------------------------------------------------------------------------
# Per-booking lock
# ---------------------------------------------------------------------------

@asynccontextmanager
async def booking_lock(redis: aioredis.Redis, booking_id: str) -> AsyncIterator[str]:
    """
    Serialise every state change of one booking across workers.

    SET NX PX with a random token; waits up to booking_lock_wait_seconds for
    the holder to finish, then gives up with ConcurrentModification. Only the
    token holder releases the key. Other bookings are never blocked.
    """
    key = f"booking:{booking_id}:lock"
    token = uuid.uuid4().hex
    ttl_ms = int(settings.effective_lock_ttl_seconds * 1000)
    loop = asyncio.get_running_loop()
    deadline = loop.time() + settings.booking_lock_wait_seconds

    while not await redis.set(key, token, nx=True, px=ttl_ms):
        if loop.time() >= deadline:
            logger.warning("Lock wait timed out for booking=%s", booking_id)
            raise ConcurrentModification(f"Booking {booking_id} is being modified, try again")
        await asyncio.sleep(LOCK_POLL_SECONDS)

    try:
        yield token
    finally:
        if await redis.get(key) == token:
            await redis.delete(key)


# ---------------------------------------------------------------------------
# Cache helpers
# ---------------------------------------------------------------------------

async def cache_set(redis: aioredis.Redis, key: str, value: str, ttl: int) -> None:
    await redis.setex(key, ttl, value)


async def cache_get(redis: aioredis.Redis, key: str) -> str | None:
    return await redis.get(key)
