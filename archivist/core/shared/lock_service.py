"""
Redis-based distributed locking for Archivist.

Archive builds keep their in-progress archive in local scratch storage keyed
by build id. Two attempts for the same build (at-least-once delivery, a
manual regenerate racing a queue retry) must not append to that file at the
same time, so each attempt holds ``archive_build:{build_id}`` for its
duration. Uses Redis SET NX PX for atomic acquisition with expiry, so a
crashed worker cannot hold a build forever.

Usage:
    from archivist.core.shared.lock_service import lock_service

    async with lock_service.lock(f"archive_build:{build_id}", timeout=1800) as acquired:
        if acquired:
            await archive_build_service.build(build_id)
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

import redis.asyncio as redis

from archivist.config import settings

logger = logging.getLogger("archivist.services.lock")


class LockService:
    """
    Distributed locking service using Redis.

    Lock Key Format:
        archivist:lock:{resource_name}

    Lock Value Format:
        {lock_id}:{acquired_at}
    """

    def __init__(self, redis_url: Optional[str] = None):
        self._redis: Optional[redis.Redis] = None
        self._redis_loop: Optional[asyncio.AbstractEventLoop] = None
        self._redis_url = redis_url or settings.redis_url
        self._lock_prefix = "archivist:lock:"

    async def _get_redis(self) -> redis.Redis:
        """
        Get or create the Redis client for the running event loop.

        Celery tasks call asyncio.run() per invocation, so a client bound to a
        previous (closed) loop is abandoned rather than reused.
        """
        loop = asyncio.get_running_loop()
        if self._redis is None or self._redis_loop is not loop:
            self._redis_loop = loop
            self._redis = redis.from_url(self._redis_url, decode_responses=True)
        return self._redis

    async def acquire_lock(
        self,
        resource_name: str,
        timeout: int = 300,
        retry_interval: float = 0.5,
        max_retries: int = 0,
    ) -> Optional[str]:
        """
        Attempt to acquire a distributed lock.

        Args:
            resource_name: Name of the resource to lock (e.g., "archive_build:<id>")
            timeout: Lock expiration in seconds
            retry_interval: Seconds between retry attempts
            max_retries: Maximum retry attempts (0 = no retries)

        Returns:
            Lock ID string if acquired, None if lock not available
        """
        r = await self._get_redis()
        lock_key = f"{self._lock_prefix}{resource_name}"
        lock_id = str(uuid.uuid4())
        lock_value = f"{lock_id}:{datetime.utcnow().isoformat()}"

        attempts = 0
        while True:
            acquired = await r.set(lock_key, lock_value, nx=True, px=timeout * 1000)

            if acquired:
                logger.debug(f"Lock acquired: {resource_name} (id={lock_id[:8]}..., timeout={timeout}s)")
                return lock_id

            attempts += 1
            if attempts > max_retries:
                logger.debug(f"Lock not available: {resource_name} (attempts={attempts})")
                return None

            await asyncio.sleep(retry_interval)

    async def release_lock(self, resource_name: str, lock_id: str) -> bool:
        """
        Release a lock only if it is still held under ``lock_id``.

        Returns:
            True if lock was released, False if lock not held or mismatch
        """
        r = await self._get_redis()
        lock_key = f"{self._lock_prefix}{resource_name}"

        # Atomic check-and-delete: only delete if the value starts with our lock_id
        release_script = """
        local current = redis.call('GET', KEYS[1])
        if current and string.find(current, ARGV[1], 1, true) == 1 then
            return redis.call('DEL', KEYS[1])
        end
        return 0
        """

        result = await r.eval(release_script, 1, lock_key, lock_id)
        released = result == 1

        if not released:
            logger.warning(f"Lock not released (expired or taken over): {resource_name}")

        return released

    async def is_locked(self, resource_name: str) -> bool:
        r = await self._get_redis()
        return await r.exists(f"{self._lock_prefix}{resource_name}") == 1

    @asynccontextmanager
    async def lock(
        self,
        resource_name: str,
        timeout: int = 300,
        retry_interval: float = 0.5,
        max_retries: int = 0,
    ):
        """
        Context manager for acquiring and releasing locks.

        Yields True if the lock was acquired, False otherwise, and releases
        it on exit.
        """
        lock_id = await self.acquire_lock(resource_name, timeout, retry_interval, max_retries)
        try:
            yield lock_id is not None
        finally:
            if lock_id:
                await self.release_lock(resource_name, lock_id)

    async def close(self):
        """Close Redis connection."""
        if self._redis:
            await self._redis.close()
            self._redis = None
            self._redis_loop = None


# Global singleton instance
lock_service = LockService()
