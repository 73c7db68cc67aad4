"""
Redis-based distributed semaphore bounding concurrent metric fetches per
platform across API and worker processes.

Uses a Redis sorted set (ZSET) where:
- key: sem:fetch:{platform}
- members: unique tokens (UUIDs)
- scores: expiry timestamps (unix epoch)

Expired tokens are cleaned up on every acquire attempt, so a crashed holder
frees its slot after the TTL.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager

import redis.asyncio as aioredis

from campaign_tracker.settings import get_settings

logger = logging.getLogger(__name__)

_redis_client: aioredis.Redis | None = None


def _get_redis() -> aioredis.Redis:
    global _redis_client
    if _redis_client is None:
        settings = get_settings()
        _redis_client = aioredis.from_url(settings.redis_url, decode_responses=True)
    return _redis_client


def _sem_key(name: str) -> str:
    return f"sem:fetch:{name}"


async def acquire(
    name: str,
    limit: int,
    *,
    ttl_sec: int | None = None,
    wait_timeout_sec: int | None = None,
    client: aioredis.Redis | None = None,
) -> str:
    """Acquire a slot; returns the token to pass to release().

    Raises TimeoutError if no slot frees up within wait_timeout_sec.
    """
    settings = get_settings()
    if ttl_sec is None:
        ttl_sec = settings.redis_semaphore_ttl_sec
    if wait_timeout_sec is None:
        wait_timeout_sec = settings.semaphore_wait_timeout_sec

    r = client or _get_redis()
    key = _sem_key(name)
    token = str(uuid.uuid4())
    deadline = time.monotonic() + wait_timeout_sec
    backoff = 0.5

    while True:
        now_ts = time.time()
        await r.zremrangebyscore(key, "-inf", now_ts)
        current = await r.zcard(key)

        if current < limit:
            added = await r.zadd(key, {token: now_ts + ttl_sec}, nx=True)
            if added:
                # another holder may have slipped in between zcard and zadd
                new_count = await r.zcard(key)
                if new_count > limit:
                    await r.zrem(key, token)
                else:
                    logger.debug(f"[semaphore] Acquired '{name}' ({new_count}/{limit})")
                    return token

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TimeoutError(
                f"Semaphore '{name}': timed out waiting {wait_timeout_sec}s for slot (limit={limit})"
            )
        await asyncio.sleep(min(backoff, remaining))
        backoff = min(backoff * 1.5, 5.0)


async def release(name: str, token: str, *, client: aioredis.Redis | None = None) -> None:
    r = client or _get_redis()
    removed = await r.zrem(_sem_key(name), token)
    if not removed:
        logger.warning(f"[semaphore] Release '{name}': token {token[:8]} not found (expired?)")


@asynccontextmanager
async def platform_slot(platform: str, limit: int | None = None, *, client: aioredis.Redis | None = None):
    """Hold one fetch slot for `platform` for the duration of the block."""
    settings = get_settings()
    limit = limit or settings.fetch_max_per_platform
    token = await acquire(platform, limit, client=client)
    try:
        yield token
    finally:
        await release(platform, token, client=client)
