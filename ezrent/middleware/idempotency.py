import json
from typing import Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse

from ezrent.config import get_settings
from ezrent.redis_client import get_redis, cache_get, cache_set

settings = get_settings()


def _cache_key(actor_id: str, key: str) -> str:
    # Scoped per caller so two users cannot collide on the same key
    return f"idempotency:{actor_id}:{key}"


async def check_idempotency(request: Request, actor_id: str) -> Optional[Response]:
    """
    Returns the cached Response if this caller already used the
    Idempotency-Key, otherwise None (proceed normally).
    """
    key = request.headers.get("Idempotency-Key")
    if not key:
        return None

    redis = await get_redis()
    cached = await cache_get(redis, _cache_key(actor_id, key))

    if cached:
        data = json.loads(cached)
        return JSONResponse(
            content=data["body"],
            status_code=data["status_code"],
            headers={"X-Idempotency-Replay": "true"},
        )
    return None


async def store_idempotency_result(actor_id: str, key: str, status_code: int, body: dict) -> None:
    """Persist the response for the given idempotency key."""
    redis = await get_redis()
    await cache_set(
        redis,
        _cache_key(actor_id, key),
        json.dumps({"status_code": status_code, "body": body}),
        ttl=settings.idempotency_ttl_seconds,
    )
