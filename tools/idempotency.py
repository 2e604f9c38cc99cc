import hashlib
import os
import time
from typing import Optional

import redis
from loguru import logger


def callback_key(body: bytes, event_id: Optional[str] = None) -> str:
    """Key a callback delivery by its explicit event id, else by a digest of the raw body."""
    if event_id:
        return f"event:{event_id}"
    return f"body:{hashlib.sha256(body).hexdigest()}"


class Idem:
    """Redis-based guard that drops repeated deliveries of the same research callback."""

    def __init__(self, redis_url: Optional[str] = None, prefix: str = "research-callback"):
        """Initialize Redis connection."""
        self.prefix = prefix
        self._memory_keys = {}
        try:
            redis_url = redis_url or os.getenv("REDIS_URL", "redis://localhost:6379")
            self.r = redis.from_url(redis_url, socket_connect_timeout=2)
            # Test connection
            self.r.ping()
            logger.info("Redis connection established successfully")
        except (redis.RedisError, ValueError) as e:
            logger.warning(f"Redis unavailable ({e}), deduplicating callbacks in memory")
            self.r = None

    @property
    def connected(self) -> bool:
        return self.r is not None

    def check_and_set(self, key: str, ttl: int = 3600) -> bool:
        """
        Record a delivery key unless it was seen within the TTL.

        Args:
            key: Delivery key, see callback_key()
            ttl: Time to live in seconds (default: 1 hour)

        Returns:
            True if the key is new, False for a duplicate delivery
        """
        if not key:
            logger.warning("Empty key provided to idempotency check")
            return False

        if self.r:
            try:
                result = self.r.set(
                    name=f"{self.prefix}:{key}",
                    value=int(time.time()),
                    ex=ttl,
                    nx=True
                )
                return result is True
            except redis.RedisError as e:
                logger.error(f"Idempotency check failed: {e}")
                # Fail open - a duplicate callback is a no-op for resolved prospects
                return True

        now = time.time()
        expires_at = self._memory_keys.get(key)
        if expires_at is not None and expires_at > now:
            return False
        self._memory_keys[key] = now + ttl
        return True

    def clear_key(self, key: str) -> bool:
        """Manually clear a key (for testing/debugging)."""
        if self.r:
            try:
                return bool(self.r.delete(f"{self.prefix}:{key}"))
            except redis.RedisError as e:
                logger.error(f"Failed to clear key: {e}")
                return False
        return self._memory_keys.pop(key, None) is not None
