"""
Fast-path cache of settled notifications.

Two tiers, as for any idempotency key:
1. Redis, consulted first, remembers notification ids that settled recently
2. The order ledger, which is authoritative

The cache only ever answers "settled" or "don't know". A Redis outage, a miss,
or a cache that was never configured all fall through to the ledger, so the
settlement decision never depends on Redis.
"""
from typing import Optional

import redis.asyncio as aioredis
import structlog

from booking_settlement.config import get_settings

logger = structlog.get_logger(__name__)


class SettledNotificationCache:
    """Redis-backed set of notification ids known to be settled."""

    KEY_PREFIX = "settled:"

    def __init__(
        self,
        redis_client: Optional[aioredis.Redis] = None,
        redis_url: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
    ):
        """
        Initialize the cache.

        Args:
            redis_client: Optional Redis client (created lazily from the URL otherwise)
            redis_url: Redis URL; defaults to settings, ``None`` disables the cache
            ttl_seconds: How long a settled id is remembered
        """
        settings = get_settings()
        self.redis_client = redis_client
        self.redis_url = redis_url if redis_url is not None else settings.redis_url
        self.ttl_seconds = ttl_seconds or settings.settled_cache_ttl

    @property
    def enabled(self) -> bool:
        return self.redis_client is not None or bool(self.redis_url)

    def _ensure_redis(self) -> aioredis.Redis:
        """Ensure Redis client is initialized."""
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self.redis_client

    async def is_settled(self, notification_id: str) -> bool:
        """True only if Redis positively remembers the notification as settled."""
        if not self.enabled:
            return False
        try:
            redis = self._ensure_redis()
            hit = await redis.get(f"{self.KEY_PREFIX}{notification_id}")
        except (aioredis.RedisError, OSError) as e:
            logger.warning(
                "settled_cache_read_error",
                notification_id=notification_id,
                error=str(e),
            )
            return False
        return hit is not None

    async def mark_settled(self, notification_id: str, order_number: str) -> None:
        """Remember a settled notification. Failures are logged and ignored."""
        if not self.enabled:
            return
        try:
            redis = self._ensure_redis()
            await redis.setex(
                f"{self.KEY_PREFIX}{notification_id}",
                self.ttl_seconds,
                order_number,
            )
        except (aioredis.RedisError, OSError) as e:
            logger.warning(
                "settled_cache_write_error",
                notification_id=notification_id,
                error=str(e),
            )

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client is not None:
            await self.redis_client.aclose()
            self.redis_client = None
