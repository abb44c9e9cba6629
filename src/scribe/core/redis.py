"""Redis connection pool and job-view cache invalidation.

The job record in Postgres is the single source of truth. Redis only holds
derived, disposable data: cached job views read by polling clients and a
per-user status event channel. ViewCache drops the cached views and
publishes an event after every committed transition.
"""

from __future__ import annotations

import json

import redis.asyncio as aioredis
import structlog

from src.scribe.config import get_settings

logger = structlog.get_logger(__name__)

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


# ── Job View Cache ──────────────────────────────────────────────────────────


class ViewCache:
    """Cached job views keyed by job and by owner.

    Keys:
        job:{job_id}:gen          -- generation counter, bumped on every write
        job:{job_id}:v{gen}       -- serialized JobView for that generation
        jobs:{user_id}            -- serialized job list for the owner
        jobs:{user_id}:events     -- pub/sub channel carrying status changes

    Readers take the generation before reading the database and write the
    view under that generation only. A view read before a transition can
    therefore never be served after it: the transition has moved readers
    on to the next generation.

    Cache failures are logged and never fail the transition that triggered
    them; a stale entry expires after ``ttl_seconds`` at worst.
    """

    def __init__(self, redis_client: aioredis.Redis, ttl_seconds: int = 30) -> None:
        self._redis = redis_client
        self._ttl = ttl_seconds

    @staticmethod
    def generation_key(job_id: str) -> str:
        return f"job:{job_id}:gen"

    @staticmethod
    def job_key(job_id: str, generation: int) -> str:
        return f"job:{job_id}:v{generation}"

    @staticmethod
    def user_key(user_id: str) -> str:
        return f"jobs:{user_id}"

    async def generation(self, job_id: str) -> int | None:
        """Current generation, or None when Redis is unavailable."""
        try:
            raw = await self._redis.get(self.generation_key(job_id))
        except aioredis.RedisError as exc:
            logger.warning("view_cache_read_failed", job_id=job_id, error=str(exc))
            return None
        return int(raw or 0)

    async def get_job(self, job_id: str, generation: int) -> dict | None:
        """Return a cached job view dict, or None on miss."""
        try:
            raw = await self._redis.get(self.job_key(job_id, generation))
        except aioredis.RedisError as exc:
            logger.warning("view_cache_read_failed", job_id=job_id, error=str(exc))
            return None
        return json.loads(raw) if raw else None

    async def put_job(self, job_id: str, generation: int, view: dict) -> None:
        try:
            await self._redis.set(
                self.job_key(job_id, generation), json.dumps(view, default=str), ex=self._ttl
            )
        except aioredis.RedisError as exc:
            logger.warning("view_cache_write_failed", job_id=job_id, error=str(exc))

    async def _bump(self, job_id: str) -> None:
        gen_key = self.generation_key(job_id)
        generation = await self._redis.incr(gen_key)
        await self._redis.expire(gen_key, 86400)
        await self._redis.delete(self.job_key(job_id, generation - 1))

    async def drop_job(self, job_id: str) -> None:
        """Retire the cached view only; used for progress writes."""
        try:
            await self._bump(job_id)
        except aioredis.RedisError as exc:
            logger.warning("view_cache_invalidate_failed", job_id=job_id, error=str(exc))

    async def invalidate_job(self, user_id: str, job_id: str, status: str) -> None:
        """Retire cached views for a job and publish its new status."""
        try:
            await self._bump(job_id)
            await self._redis.delete(self.user_key(user_id))
            await self._redis.publish(
                f"{self.user_key(user_id)}:events",
                json.dumps({"job_id": job_id, "status": status}),
            )
        except aioredis.RedisError as exc:
            logger.warning(
                "view_cache_invalidate_failed",
                job_id=job_id,
                user_id=user_id,
                error=str(exc),
            )


def get_view_cache() -> ViewCache:
    """Get a ViewCache bound to the global Redis pool."""
    return ViewCache(get_redis_pool())
