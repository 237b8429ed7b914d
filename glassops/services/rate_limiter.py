"""
Rate Limiter Service using Redis sorted sets (sliding window).

Used on the public intake webhook, keyed per client address.
"""
import time
import redis.asyncio as redis
from redis.exceptions import RedisError

from glassops.config import settings
from glassops.logging_config import get_logger

log = get_logger(component="rate_limiter")


class RateLimiter:
    """Per-client sliding window limiter using Redis sorted sets."""

    def __init__(self, redis_url: str = None, limit: int = None, window: int = None):
        self.redis_url = redis_url or settings.REDIS_URL
        self._redis = None
        self.limit = limit or settings.INTAKE_RATE_LIMIT
        self.window = window or settings.INTAKE_RATE_WINDOW_SECONDS

    async def get_redis(self):
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url)
        return self._redis

    async def is_allowed(self, scope: str, client_id: str) -> tuple[bool, int]:
        """
        Check if a request is allowed for the client.

        Returns:
            (allowed: bool, retry_after: int)
        """
        key = f"ratelimit:{scope}:{client_id}"
        now = time.time()
        window_start = now - self.window

        try:
            r = await self.get_redis()
            pipe = r.pipeline()
            pipe.zremrangebyscore(key, 0, window_start)
            pipe.zcard(key)
            results = await pipe.execute()

            if results[1] >= self.limit:
                oldest = await r.zrange(key, 0, 0, withscores=True)
                if oldest:
                    retry_after = int(self.window - (now - oldest[0][1]))
                else:
                    retry_after = self.window
                return False, max(retry_after, 1)

            await r.zadd(key, {str(now): now})
            await r.expire(key, self.window)
            return True, 0

        except (RedisError, OSError) as e:
            # Fail open when Redis is down
            log.warning("rate_limiter_unavailable", scope=scope, error=str(e))
            return True, 0

    async def close(self):
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


# Singleton instance
rate_limiter = RateLimiter()
