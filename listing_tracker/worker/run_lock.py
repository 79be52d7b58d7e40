"""Redis-based lock ensuring a single discovery producer runs at a time."""

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

import redis.asyncio as redis

from listing_tracker.config import settings

logger = logging.getLogger(__name__)

# Lock value layout: "<run_id>|<token>|<started_at>"
VALUE_SEPARATOR = "|"

# Returns: 0 = not found/already released, 1 = deleted, 2 = mismatch
RELEASE_SCRIPT = """
local lock_value = redis.call('GET', KEYS[1])
if not lock_value then
    return 0
end
if string.sub(lock_value, 1, string.len(ARGV[1])) == ARGV[1] then
    redis.call('DEL', KEYS[1])
    redis.call('DEL', KEYS[2])
    return 1
end
return 2
"""

# Returns: 0 = not found, 1 = refreshed, 2 = mismatch
REFRESH_SCRIPT = """
local lock_value = redis.call('GET', KEYS[1])
if not lock_value then
    return 0
end
if string.sub(lock_value, 1, string.len(ARGV[1])) == ARGV[1] then
    redis.call('EXPIRE', KEYS[1], ARGV[2])
    redis.call('SET', KEYS[2], ARGV[3], 'EX', ARGV[2])
    return 1
end
return 2
"""


class RunLock:
    """
    Distributed discovery lock.

    Features:
    - TTL-based expiration (crashed producers never hold it forever)
    - Heartbeat key tracking the last refresh
    - Token-based ownership verification on refresh and release
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        namespace: Optional[str] = None,
        client: Optional[redis.Redis] = None,
    ):
        self.redis_url = redis_url or settings.redis_url
        namespace = namespace or settings.queue_namespace
        self.lock_key = f"{namespace}:discovery:lock"
        self.heartbeat_key = f"{namespace}:discovery:heartbeat"
        self._redis: Optional[redis.Redis] = client
        self._owns_client = client is None

    async def _get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = await redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def close(self):
        """Close Redis connection."""
        if self._redis is not None and self._owns_client:
            await self._redis.aclose()
            self._redis = None

    @staticmethod
    def _owner(run_id: str, token: str) -> str:
        return f"{run_id}{VALUE_SEPARATOR}{token}{VALUE_SEPARATOR}"

    async def acquire(self, run_id: str, ttl_seconds: Optional[int] = None) -> Optional[str]:
        """
        Acquire the lock for a discovery run.

        Args:
            run_id: Identifier of the run taking the lock
            ttl_seconds: Time-to-live (defaults to settings.run_lock_ttl_seconds)

        Returns:
            Token string if acquired, None if another run holds the lock
        """
        ttl = ttl_seconds or settings.run_lock_ttl_seconds
        redis_client = await self._get_redis()

        token = uuid4().hex
        value = self._owner(run_id, token) + datetime.utcnow().isoformat()
        acquired = await redis_client.set(self.lock_key, value, nx=True, ex=ttl)

        if acquired:
            await redis_client.set(self.heartbeat_key, str(time.time()), ex=ttl)
            logger.info(f"Acquired discovery lock for run {run_id}")
            return token

        info = await self.info()
        holder = info.get("run_id") if info else "unknown"
        logger.debug(f"Discovery lock already held by run {holder}")
        return None

    async def release(self, run_id: str, token: Optional[str]) -> bool:
        """
        Release the lock only if it is still owned by run_id/token.

        Returns:
            True if released (or already gone), False on ownership mismatch
        """
        if not token:
            logger.warning("Unlock requested without token; refusing (use force_release for recovery)")
            return False

        redis_client = await self._get_redis()
        result = await redis_client.eval(
            RELEASE_SCRIPT,
            2,
            self.lock_key,
            self.heartbeat_key,
            self._owner(run_id, token),
        )

        if result == 0:
            logger.debug("Lock already released")
            return True
        if result == 1:
            logger.info(f"Released discovery lock for run {run_id}")
            return True
        logger.warning(f"Attempted to release lock with mismatched token/run_id: requested={run_id}")
        return False

    async def refresh(self, run_id: str, token: str, ttl_seconds: Optional[int] = None) -> bool:
        """Extend the lock TTL and touch the heartbeat if still owned."""
        ttl = ttl_seconds or settings.run_lock_ttl_seconds
        redis_client = await self._get_redis()
        result = await redis_client.eval(
            REFRESH_SCRIPT,
            2,
            self.lock_key,
            self.heartbeat_key,
            self._owner(run_id, token),
            str(ttl),
            str(time.time()),
        )
        if result == 1:
            logger.debug(f"Refreshed lock TTL for run {run_id}")
            return True
        if result == 2:
            logger.warning(f"Attempted to refresh lock with mismatched token/run_id: requested={run_id}")
        else:
            logger.debug("Lock not found (may have expired)")
        return False

    async def force_release(self) -> None:
        """Clear the lock without ownership check (operator recovery)."""
        redis_client = await self._get_redis()
        await redis_client.delete(self.lock_key, self.heartbeat_key)
        logger.warning("Force-cleared discovery lock and heartbeat keys")

    async def info(self) -> Optional[Dict[str, Any]]:
        """
        Get current lock information.

        Returns:
            Dict with run_id, started_at and ttl_seconds, or None if unlocked
        """
        redis_client = await self._get_redis()
        value = await redis_client.get(self.lock_key)
        if not value:
            return None
        ttl = await redis_client.ttl(self.lock_key)

        parts = value.split(VALUE_SEPARATOR)
        if len(parts) != 3:
            logger.error(f"Invalid lock value format: {value}")
            return {"raw_value": value, "ttl_seconds": ttl if ttl > 0 else None}
        run_id, _token, started_at = parts
        return {
            "run_id": run_id,
            "started_at": started_at,
            "ttl_seconds": ttl if ttl > 0 else None,
        }

    async def heartbeat_age(self) -> Optional[float]:
        """Return seconds since the last heartbeat, or None if missing."""
        redis_client = await self._get_redis()
        value = await redis_client.get(self.heartbeat_key)
        if not value:
            return None
        try:
            last_ts = float(value)
        except (ValueError, TypeError):
            return None
        return max(0.0, time.time() - last_ts)

    async def keep_alive(self, run_id: str, token: str, interval: int = 45) -> None:
        """
        Background task refreshing the lock periodically.

        Stops after three consecutive failed refreshes.
        """
        failure_count = 0
        try:
            while True:
                await asyncio.sleep(interval)
                if await self.refresh(run_id, token):
                    failure_count = 0
                    continue
                failure_count += 1
                logger.warning(
                    f"Heartbeat failed for run {run_id} (consecutive failures: {failure_count})"
                )
                if failure_count >= 3:
                    logger.error(f"Heartbeat stopping after {failure_count} failures for run {run_id}")
                    break
        except asyncio.CancelledError:
            logger.debug(f"Heartbeat cancelled for run {run_id}")
            raise
