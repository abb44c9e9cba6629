"""Per-user, per-provider request limits backed by Redis counters.

Two fixed windows per (user, provider): the current UTC minute and the
current UTC day. ``check()`` runs before any credits move; ``record()``
counts a request once it is actually sent upstream.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import redis.asyncio as aioredis
import structlog

from src.scribe.billing.schemas import UserTier
from src.scribe.errors import RateLimitError

logger = structlog.get_logger(__name__)


def _minute_key(user_id: str, provider: str, now: datetime) -> str:
    return f"ratelimit:{user_id}:{provider}:m:{now:%Y%m%d%H%M}"


def _day_key(user_id: str, provider: str, now: datetime) -> str:
    return f"ratelimit:{user_id}:{provider}:d:{now:%Y%m%d}"


class UsageRateLimiter:
    """Fixed-window request counters.

    Args:
        redis_client: redis.asyncio client (decode_responses=True).
        requests_per_minute: Per-provider minute limit.
        requests_per_day: Per-provider day limit.
    """

    def __init__(
        self,
        redis_client: aioredis.Redis,
        requests_per_minute: int = 10,
        requests_per_day: int = 100,
    ) -> None:
        self._redis = redis_client
        self._rpm = requests_per_minute
        self._rpd = requests_per_day

    async def check(
        self,
        user_id: str,
        provider: str,
        tier: UserTier,
        now: datetime | None = None,
    ) -> None:
        """Raise RateLimitError if either window is exhausted.

        Fails open: if Redis is unreachable the request is allowed.
        """
        now = now or datetime.now(timezone.utc)
        try:
            minute_count = int(await self._redis.get(_minute_key(user_id, provider, now)) or 0)
            day_count = int(await self._redis.get(_day_key(user_id, provider, now)) or 0)
        except aioredis.RedisError as exc:
            logger.warning("rate_limit_check_failed", user_id=user_id, error=str(exc))
            return

        if minute_count >= self._rpm:
            reset_at = now.replace(second=0, microsecond=0) + timedelta(minutes=1)
            logger.info("rate_limited", user_id=user_id, provider=provider, window="minute")
            raise RateLimitError(
                f"Rate limit exceeded: {self._rpm} requests per minute",
                reset_at=reset_at,
                upgrade_eligible=tier == UserTier.FREE,
                provider=provider,
            )

        if day_count >= self._rpd:
            reset_at = now.replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(days=1)
            logger.info("rate_limited", user_id=user_id, provider=provider, window="day")
            raise RateLimitError(
                f"Daily limit exceeded: {self._rpd} requests per day",
                reset_at=reset_at,
                upgrade_eligible=tier == UserTier.FREE,
                provider=provider,
            )

    async def record(self, user_id: str, provider: str, now: datetime | None = None) -> None:
        """Count one upstream request in both windows."""
        now = now or datetime.now(timezone.utc)
        minute_key = _minute_key(user_id, provider, now)
        day_key = _day_key(user_id, provider, now)
        try:
            if await self._redis.incr(minute_key) == 1:
                await self._redis.expire(minute_key, 120)
            if await self._redis.incr(day_key) == 1:
                await self._redis.expire(day_key, 2 * 86400)
        except aioredis.RedisError as exc:
            logger.warning("rate_limit_record_failed", user_id=user_id, error=str(exc))
