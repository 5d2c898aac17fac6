"""Redis connection pool and job-scoped key helpers.

Every key used by the sync job is prefixed with {REDIS_KEY_PREFIX}:{job_id}:
so that several sync jobs (e.g. for different Sharpspring accounts) can share
one Redis instance without their caches leaking into each other.
"""

from __future__ import annotations

import redis.asyncio as aioredis

from src.sharpsync.config import get_settings

# ── Module-level Redis pool (lazy init) ─────────────────────────────────────

_redis_pool: aioredis.Redis | None = None


def get_redis_pool() -> aioredis.Redis:
    """Get or create the Redis connection pool singleton."""
    global _redis_pool
    if _redis_pool is None:
        settings = get_settings()
        _redis_pool = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
        )
    return _redis_pool


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis_pool
    if _redis_pool:
        await _redis_pool.close()
        _redis_pool = None


def job_key(job_id: str, *parts: str) -> str:
    """Build a job-scoped key: {prefix}:{job_id}:{part}:{part}..."""
    prefix = get_settings().REDIS_KEY_PREFIX
    return ":".join([prefix, job_id, *parts])
