"""
Redis-based Rate Limiter using a Fixed Window counter.

Counts requests per user in the current window (one Redis key per user and
window index). Uses Redis for shared state across multiple backend instances.
"""

import time
import redis.asyncio as redis
from typing import Optional, Tuple
from dataclasses import dataclass
import logging

logger = logging.getLogger(__name__)


@dataclass
class RateLimitConfig:
    """Configuration for the request window."""
    limit: int = 20           # requests per window
    window_seconds: int = 60  # 1 minute window


class RateLimiter:
    """
    Fixed Window Rate Limiter backed by Redis.

    Keys used:
    - rate_limit:{user_id}:{window_index} → requests made in that window
    """

    def __init__(
        self,
        redis_url: str,
        config: Optional[RateLimitConfig] = None,
        client: Optional[redis.Redis] = None,
    ):
        self.redis_url = redis_url
        self.config = config or RateLimitConfig()
        self._client = client

    async def connect(self) -> None:
        """Initialize Redis connection."""
        if self._client is None:
            self._client = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True
            )
        # Test connection
        await self._client.ping()
        logger.info("Rate limiter connected to Redis")

    async def close(self) -> None:
        """Close Redis connection."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _window(self, now: float) -> Tuple[str, int]:
        window = self.config.window_seconds
        index = int(now // window)
        reset_in = window - int(now % window)
        return str(index), reset_in

    async def check_rate_limit(self, user_id: str) -> Tuple[bool, int, int]:
        """
        Count a request against the user's current window.

        Returns:
            Tuple of (allowed, remaining_requests, reset_in_seconds)
        """
        if not self._client:
            raise RuntimeError("Rate limiter not connected. Call connect() first.")

        index, reset_in = self._window(time.time())
        key = f"rate_limit:{user_id}:{index}"

        pipe = self._client.pipeline()
        pipe.incr(key)
        pipe.expire(key, self.config.window_seconds)
        results = await pipe.execute()

        count = int(results[0])
        limit = self.config.limit
        allowed = count <= limit
        remaining = max(0, limit - count)

        if not allowed:
            logger.warning(f"Rate limit exceeded for user {user_id} ({count}/{limit} in window)")

        return allowed, remaining, reset_in

    async def get_quota_status(self, user_id: str) -> dict:
        """
        Get current quota status for a user.

        Returns dict with:
        - remaining: requests left in this window
        - limit: max requests per window
        - reset_in_seconds: seconds until the window resets
        """
        if not self._client:
            raise RuntimeError("Rate limiter not connected")

        index, reset_in = self._window(time.time())
        used = await self._client.get(f"rate_limit:{user_id}:{index}")
        used = int(used) if used else 0

        return {
            "remaining": max(0, self.config.limit - used),
            "limit": self.config.limit,
            "window_seconds": self.config.window_seconds,
            "reset_in_seconds": reset_in,
        }

    async def reset_user(self, user_id: str) -> None:
        """Reset the current window for a user (admin function)."""
        if not self._client:
            raise RuntimeError("Rate limiter not connected")

        index, _ = self._window(time.time())
        await self._client.delete(f"rate_limit:{user_id}:{index}")
        logger.info(f"Reset rate limit for user {user_id}")


# Global instance (initialized on startup)
rate_limiter: Optional[RateLimiter] = None


async def get_rate_limiter() -> RateLimiter:
    """Get the global rate limiter instance."""
    if rate_limiter is None:
        raise RuntimeError("Rate limiter not initialized")
    return rate_limiter


async def init_rate_limiter(redis_url: str, config: Optional[RateLimitConfig] = None) -> RateLimiter:
    """Initialize the global rate limiter."""
    global rate_limiter
    limiter = RateLimiter(redis_url, config)
    await limiter.connect()
    rate_limiter = limiter
    return rate_limiter


async def close_rate_limiter() -> None:
    """Close the global rate limiter."""
    global rate_limiter
    if rate_limiter:
        await rate_limiter.close()
        rate_limiter = None
