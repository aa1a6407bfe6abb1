"""
Per-subscription lock shared across worker processes, on Redis.

Uses redis-py's Lock (SET NX PX with a token, released by a Lua script that
checks the token). ``redis_lock_timeout`` bounds how long a crashed holder
can block a subscription; ``lock_acquire_timeout`` bounds how long a waiter
blocks before giving up with a retryable error.
"""
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
import structlog
from redis.exceptions import LockError, RedisError

from subscription_billing.config import Settings, get_settings
from subscription_billing.domain.exceptions import TransientInfrastructureError

logger = structlog.get_logger(__name__)


class RedisSubscriptionLock:
    """SubscriptionLock adapter for multi-process deployments."""

    def __init__(
        self,
        redis_client: aioredis.Redis | None = None,
        settings: Settings | None = None,
        key_prefix: str = "subscription:lock:",
    ):
        """
        Initialize the lock.

        Args:
            redis_client: Optional Redis client (creates one from settings if not provided)
            settings: Optional settings (uses get_settings() if not provided)
            key_prefix: Namespace for lock keys
        """
        self.settings = settings or get_settings()
        self.redis_client = redis_client
        self.key_prefix = key_prefix

    def _ensure_redis(self) -> aioredis.Redis:
        """Ensure Redis client is initialized."""
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self.redis_client

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        redis = self._ensure_redis()
        lock_key = f"{self.key_prefix}{key}"
        lock = redis.lock(
            lock_key,
            timeout=self.settings.redis_lock_timeout,
            blocking_timeout=self.settings.lock_acquire_timeout,
        )

        try:
            acquired = await lock.acquire()
        except RedisError as e:
            logger.error("subscription_lock_error", lock_key=lock_key, error=str(e))
            raise TransientInfrastructureError(
                f"Could not acquire lock {lock_key}: {e}"
            ) from e

        if not acquired:
            logger.warning(
                "subscription_lock_acquisition_failed",
                lock_key=lock_key,
                blocking_timeout=self.settings.lock_acquire_timeout,
            )
            raise TransientInfrastructureError(
                f"Timed out waiting for lock {lock_key} - another delivery is in progress"
            )

        logger.debug("subscription_lock_acquired", lock_key=lock_key)
        try:
            yield
        finally:
            try:
                await lock.release()
                logger.debug("subscription_lock_released", lock_key=lock_key)
            except LockError as e:
                # Lock expired before release
                logger.warning("subscription_lock_release_failed", lock_key=lock_key, error=str(e))
