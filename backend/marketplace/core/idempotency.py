"""Redis-based request idempotency guard (``Idempotency-Key`` header)."""

import logging

import redis.asyncio as aioredis

from marketplace.core.config import settings

logger = logging.getLogger(__name__)

_redis: aioredis.Redis | None = None


async def _get_redis() -> aioredis.Redis:
    global _redis
    if _redis is None:
        _redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    return _redis


def _key(scope: str, key: str) -> str:
    return f"idempotent:{scope}:{key}"


async def claim_request(scope: str, key: str, ttl: int = 300) -> bool:
    """Return True if this is the first request for ``key`` within ``scope``.

    A Redis outage lets the request through; the escrow row lock and status
    guards still prevent double-processing.
    """
    try:
        r = await _get_redis()
        was_set = await r.set(_key(scope, key), "1", nx=True, ex=ttl)
        return bool(was_set)
    except Exception:
        logger.exception("Idempotency check failed for %s:%s, allowing through", scope, key)
        return True


async def release_request(scope: str, key: str) -> None:
    """Drop a claim so the client may retry after a failed attempt."""
    try:
        r = await _get_redis()
        await r.delete(_key(scope, key))
    except Exception:
        logger.exception("Failed to release idempotency key %s:%s", scope, key)
