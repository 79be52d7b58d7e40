"""Redis-backed work queue shared by coordinators, workers and verifiers.

Single source of truth for what work remains and what already happened to a
listing id. Every operation is one round-trip: compound read-then-write
operations run as Lua scripts, multi-key writes as MULTI pipelines.

Two independent pending lists exist: the detail queue fed by discovery and
the missing queue fed by staleness checks, so verification traffic never
competes with fresh discovery work.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional
from uuid import uuid4

import redis.asyncio as redis

from listing_tracker.config import settings

logger = logging.getLogger(__name__)


# KEYS: pending, pending_set, processed, stats, retries, failed, areas
# ARGV: cutoff, area, started_at, id...
ENQUEUE_SCRIPT = """
redis.call('ZREMRANGEBYSCORE', KEYS[3], '-inf', '(' .. ARGV[1])
local added = 0
for i = 4, #ARGV do
    local id = ARGV[i]
    if not redis.call('ZSCORE', KEYS[3], id) then
        if redis.call('SADD', KEYS[2], id) == 1 then
            redis.call('RPUSH', KEYS[1], id)
            redis.call('HDEL', KEYS[5], id)
            redis.call('HDEL', KEYS[6], id)
            added = added + 1
        end
    end
    if ARGV[2] ~= '' then
        redis.call('HSET', KEYS[7], id, ARGV[2])
    end
end
if added > 0 then
    redis.call('HINCRBY', KEYS[4], 'total_discovered', added)
    redis.call('HSETNX', KEYS[4], 'started_at', ARGV[3])
end
return added
"""

# KEYS: list, membership set
# Pops the head and drops its membership in the same step
POP_SCRIPT = """
local id = redis.call('LPOP', KEYS[1])
if id then
    redis.call('SREM', KEYS[2], id)
end
return id
"""

# Seconds between pop attempts while a dequeue waits for work
POP_POLL_INTERVAL = 0.2

# KEYS: retries, pending_set, pending
# ARGV: id, max_attempts
# Returns the new attempt count, or -1 when the threshold is already reached
REQUEUE_SCRIPT = """
local current = tonumber(redis.call('HGET', KEYS[1], ARGV[1]) or '0')
if current >= tonumber(ARGV[2]) then
    return -1
end
local attempts = redis.call('HINCRBY', KEYS[1], ARGV[1], 1)
if redis.call('SADD', KEYS[2], ARGV[1]) == 1 then
    redis.call('RPUSH', KEYS[3], ARGV[1])
end
return attempts
"""

# KEYS: last_seen, missing_set, verified_inactive
# ARGV: cutoff
FIND_MISSING_SCRIPT = """
local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', '(' .. ARGV[1])
local missing = {}
for _, id in ipairs(ids) do
    if redis.call('SISMEMBER', KEYS[2], id) == 0 and redis.call('SISMEMBER', KEYS[3], id) == 0 then
        table.insert(missing, id)
    end
end
return missing
"""

# KEYS: list, membership set
# ARGV: id...
PUSH_UNIQUE_SCRIPT = """
local added = 0
for i = 1, #ARGV do
    if redis.call('SADD', KEYS[2], ARGV[i]) == 1 then
        redis.call('RPUSH', KEYS[1], ARGV[i])
        added = added + 1
    end
end
return added
"""

# KEYS: failed, retries, pending_set, pending
RETRY_FAILED_SCRIPT = """
local ids = redis.call('HKEYS', KEYS[1])
local requeued = 0
for _, id in ipairs(ids) do
    redis.call('HDEL', KEYS[2], id)
    if redis.call('SADD', KEYS[3], id) == 1 then
        redis.call('RPUSH', KEYS[4], id)
        requeued = requeued + 1
    end
end
redis.call('DEL', KEYS[1])
return requeued
"""


@dataclass
class QueueStats:
    """Aggregate queue counters."""

    total_discovered: int
    processed_count: int
    queue_depth: int
    failed_count: int
    missing_queue_depth: int
    verified_inactive_count: int
    started_at: Optional[str] = None

    @property
    def remaining(self) -> int:
        return self.queue_depth

    @property
    def progress(self) -> float:
        """Processed share of everything discovered, in percent."""
        if self.total_discovered == 0:
            return 0.0
        return min(100.0, (self.processed_count / self.total_discovered) * 100)


class WorkQueue:
    """
    Coordination layer for listing ids.

    Features:
    - Deduplicated enqueue against the pending set and recent processed marks
    - Atomic blocking dequeue (at most one consumer receives an id per enqueue)
    - Retry counters with redelivery through the pending list
    - Failed set with reasons, separate from the pending list
    - Last-seen timestamps and a missing sub-queue for verification
    - Fingerprint cache for change detection
    - Worker heartbeats, latency and error samples for health probes
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        namespace: Optional[str] = None,
        processed_ttl_hours: Optional[float] = None,
        client: Optional[redis.Redis] = None,
    ):
        """
        Initialize the work queue.

        Args:
            redis_url: Redis connection URL (defaults to settings)
            namespace: Key prefix, one per catalog (defaults to settings)
            processed_ttl_hours: How long a processed mark dedupes re-enqueues
            client: Pre-configured Redis client (tests, shared connections)
        """
        self.redis_url = redis_url or settings.redis_url
        self.namespace = namespace or settings.queue_namespace
        self.processed_ttl_seconds = (
            processed_ttl_hours if processed_ttl_hours is not None else settings.processed_ttl_hours
        ) * 3600
        self._redis: Optional[redis.Redis] = client
        self._owns_client = client is None
        self._scripts: dict[str, object] = {}

        ns = self.namespace
        self.pending_key = f"{ns}:queue:pending"
        self.pending_set_key = f"{ns}:queue:pending_set"
        self.processed_key = f"{ns}:processed"
        self.failed_key = f"{ns}:failed"
        self.retries_key = f"{ns}:retries"
        self.stats_key = f"{ns}:stats"
        self.areas_key = f"{ns}:areas"
        self.last_seen_key = f"{ns}:last_seen"
        self.missing_key = f"{ns}:missing:pending"
        self.missing_set_key = f"{ns}:missing:pending_set"
        self.missing_retries_key = f"{ns}:missing:retries"
        self.missing_failed_key = f"{ns}:missing:failed"
        self.verified_inactive_key = f"{ns}:verified_inactive"
        self.fingerprints_key = f"{ns}:fingerprints"
        self.workers_key = f"{ns}:workers"
        self.latency_key = f"{ns}:latency"
        self.errors_key = f"{ns}:errors"

    @property
    def all_keys(self) -> list[str]:
        return [
            self.pending_key,
            self.pending_set_key,
            self.processed_key,
            self.failed_key,
            self.retries_key,
            self.stats_key,
            self.areas_key,
            self.last_seen_key,
            self.missing_key,
            self.missing_set_key,
            self.missing_retries_key,
            self.missing_failed_key,
            self.verified_inactive_key,
            self.fingerprints_key,
            self.workers_key,
            self.latency_key,
            self.errors_key,
        ]

    async def _get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = await redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def _script(self, name: str, source: str):
        if name not in self._scripts:
            client = await self._get_redis()
            self._scripts[name] = client.register_script(source)
        return self._scripts[name]

    async def close(self):
        """Close Redis connection."""
        if self._redis is not None and self._owns_client:
            await self._redis.aclose()
            self._redis = None
            self._scripts.clear()

    async def ping(self) -> bool:
        client = await self._get_redis()
        return bool(await client.ping())

    def _processed_cutoff(self, now: Optional[float] = None) -> float:
        return (now or time.time()) - self.processed_ttl_seconds

    # ------------------------------------------------------------------
    # Detail queue
    # ------------------------------------------------------------------

    async def enqueue(self, ids: Iterable[str], area: Optional[str] = None) -> int:
        """
        Push listing ids that are neither pending nor recently processed.

        Args:
            ids: Listing ids (duplicates are ignored)
            area: Optional area tag stored per id

        Returns:
            Number of ids actually added to the pending list
        """
        unique_ids = [str(i) for i in dict.fromkeys(ids)]
        if not unique_ids:
            return 0

        script = await self._script("enqueue", ENQUEUE_SCRIPT)
        added = await script(
            keys=[
                self.pending_key,
                self.pending_set_key,
                self.processed_key,
                self.stats_key,
                self.retries_key,
                self.failed_key,
                self.areas_key,
            ],
            args=[self._processed_cutoff(), area or "", datetime.utcnow().isoformat(), *unique_ids],
        )
        logger.debug(f"Enqueued {added}/{len(unique_ids)} listing ids")
        return int(added)

    async def _pop(self, list_key: str, set_key: str, timeout: float) -> Optional[str]:
        script = await self._script("pop", POP_SCRIPT)
        deadline = time.monotonic() + max(timeout or 0, 0)
        while True:
            listing_id = await script(keys=[list_key, set_key], args=[])
            if listing_id is not None:
                return listing_id
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(POP_POLL_INTERVAL, remaining))

    async def dequeue(self, timeout: float = 5) -> Optional[str]:
        """
        Pop one pending id, waiting up to timeout seconds.

        A timeout of 0 performs a non-blocking pop.
        """
        return await self._pop(self.pending_key, self.pending_set_key, timeout)

    async def is_processed(self, listing_id: str) -> bool:
        """True if a consumer completed this id within the current cycle."""
        client = await self._get_redis()
        score = await client.zscore(self.processed_key, listing_id)
        return score is not None and score >= self._processed_cutoff()

    async def mark_processed(self, listing_id: str) -> None:
        client = await self._get_redis()
        async with client.pipeline(transaction=True) as pipe:
            pipe.zadd(self.processed_key, {listing_id: time.time()})
            pipe.hdel(self.retries_key, listing_id)
            pipe.hdel(self.failed_key, listing_id)
            await pipe.execute()

    async def mark_failed(self, listing_id: str, reason: str) -> None:
        """Move an id to the failed set; it is removed from the pending list."""
        client = await self._get_redis()
        entry = json.dumps({
            "reason": reason[:500],
            "failed_at": datetime.utcnow().isoformat(),
        })
        async with client.pipeline(transaction=True) as pipe:
            pipe.hset(self.failed_key, listing_id, entry)
            pipe.srem(self.pending_set_key, listing_id)
            pipe.lrem(self.pending_key, 0, listing_id)
            await pipe.execute()
        logger.warning(f"Marked {listing_id} as failed: {reason[:200]}")

    async def retry_count(self, listing_id: str) -> int:
        client = await self._get_redis()
        value = await client.hget(self.retries_key, listing_id)
        return int(value) if value else 0

    async def requeue_with_retry(self, listing_id: str, max_attempts: int) -> bool:
        """
        Re-insert an id into the pending list and count the attempt.

        Returns:
            False when the id already reached max_attempts; the caller must then
            mark it failed
        """
        script = await self._script("requeue", REQUEUE_SCRIPT)
        attempts = await script(
            keys=[self.retries_key, self.pending_set_key, self.pending_key],
            args=[listing_id, max_attempts],
        )
        return int(attempts) >= 0

    async def get_failed(self, limit: Optional[int] = None) -> dict[str, str]:
        """Failed ids with their reasons."""
        client = await self._get_redis()
        raw = await client.hgetall(self.failed_key)
        failed = {}
        for listing_id in sorted(raw):
            try:
                failed[listing_id] = json.loads(raw[listing_id]).get("reason", "")
            except (json.JSONDecodeError, AttributeError):
                failed[listing_id] = raw[listing_id]
        if limit is not None:
            return dict(list(failed.items())[:limit])
        return failed

    async def retry_failed(self) -> int:
        """Move every failed id back to the pending list with fresh retries."""
        script = await self._script("retry_failed", RETRY_FAILED_SCRIPT)
        requeued = await script(
            keys=[self.failed_key, self.retries_key, self.pending_set_key, self.pending_key],
            args=[],
        )
        return int(requeued)

    async def queue_depth(self) -> int:
        client = await self._get_redis()
        return int(await client.llen(self.pending_key))

    # ------------------------------------------------------------------
    # Last seen and verification
    # ------------------------------------------------------------------

    async def update_last_seen(self, listing_id: str, seen_at: Optional[float] = None) -> None:
        client = await self._get_redis()
        async with client.pipeline(transaction=True) as pipe:
            pipe.zadd(self.last_seen_key, {listing_id: seen_at or time.time()})
            pipe.srem(self.verified_inactive_key, listing_id)
            pipe.hdel(self.missing_failed_key, listing_id)
            await pipe.execute()

    async def find_missing(self, hours_threshold: float) -> list[str]:
        """Ids not seen for longer than the threshold and not already queued for verification."""
        script = await self._script("find_missing", FIND_MISSING_SCRIPT)
        cutoff = time.time() - hours_threshold * 3600
        missing = await script(
            keys=[self.last_seen_key, self.missing_set_key, self.verified_inactive_key],
            args=[cutoff],
        )
        return list(missing)

    async def enqueue_missing(self, ids: Iterable[str]) -> int:
        unique_ids = [str(i) for i in dict.fromkeys(ids)]
        if not unique_ids:
            return 0
        script = await self._script("push_unique", PUSH_UNIQUE_SCRIPT)
        added = await script(keys=[self.missing_key, self.missing_set_key], args=unique_ids)
        return int(added)

    async def dequeue_missing(self, timeout: float = 5) -> Optional[str]:
        return await self._pop(self.missing_key, self.missing_set_key, timeout)

    async def missing_queue_depth(self) -> int:
        client = await self._get_redis()
        return int(await client.llen(self.missing_key))

    async def requeue_missing_with_retry(self, listing_id: str, max_attempts: int) -> bool:
        script = await self._script("requeue", REQUEUE_SCRIPT)
        attempts = await script(
            keys=[self.missing_retries_key, self.missing_set_key, self.missing_key],
            args=[listing_id, max_attempts],
        )
        return int(attempts) >= 0

    async def mark_verified_inactive(self, listing_id: str) -> None:
        """
        Record that verification confirmed the listing was removed.

        Call only once the removal reached every downstream store: the listing
        leaves last_seen and is never picked up by find_missing again.
        """
        client = await self._get_redis()
        async with client.pipeline(transaction=True) as pipe:
            pipe.sadd(self.verified_inactive_key, listing_id)
            pipe.zrem(self.last_seen_key, listing_id)
            pipe.hdel(self.missing_retries_key, listing_id)
            pipe.hdel(self.missing_failed_key, listing_id)
            await pipe.execute()

    async def mark_verification_failed(self, listing_id: str, reason: str) -> None:
        """
        Give up on verifying an id for this cycle.

        Its last_seen entry is kept, so the next staleness scan queues it
        again with a fresh retry budget.
        """
        client = await self._get_redis()
        entry = json.dumps({
            "reason": reason[:500],
            "failed_at": datetime.utcnow().isoformat(),
        })
        async with client.pipeline(transaction=True) as pipe:
            pipe.hset(self.missing_failed_key, listing_id, entry)
            pipe.hdel(self.missing_retries_key, listing_id)
            await pipe.execute()
        logger.warning(f"Verification of {listing_id} failed: {reason[:200]}")

    async def get_verification_failed(self) -> dict[str, str]:
        client = await self._get_redis()
        raw = await client.hgetall(self.missing_failed_key)
        return {listing_id: json.loads(raw[listing_id]).get("reason", "") for listing_id in sorted(raw)}

    async def is_verified_inactive(self, listing_id: str) -> bool:
        client = await self._get_redis()
        return bool(await client.sismember(self.verified_inactive_key, listing_id))

    async def verified_inactive_count(self) -> int:
        client = await self._get_redis()
        return int(await client.scard(self.verified_inactive_key))

    # ------------------------------------------------------------------
    # Change detection cache and area tags
    # ------------------------------------------------------------------

    async def get_fingerprint(self, listing_id: str) -> Optional[str]:
        client = await self._get_redis()
        return await client.hget(self.fingerprints_key, listing_id)

    async def set_fingerprint(self, listing_id: str, fingerprint: str) -> None:
        client = await self._get_redis()
        await client.hset(self.fingerprints_key, listing_id, fingerprint)

    async def get_area(self, listing_id: str) -> Optional[str]:
        client = await self._get_redis()
        return await client.hget(self.areas_key, listing_id)

    # ------------------------------------------------------------------
    # Health bookkeeping
    # ------------------------------------------------------------------

    async def register_worker(self, worker_id: str) -> None:
        """Heartbeat: refresh this worker's last-alive timestamp."""
        client = await self._get_redis()
        await client.zadd(self.workers_key, {worker_id: time.time()})

    async def unregister_worker(self, worker_id: str) -> None:
        client = await self._get_redis()
        await client.zrem(self.workers_key, worker_id)

    async def active_worker_count(self, window_seconds: Optional[float] = None) -> int:
        window = window_seconds or settings.worker_heartbeat_ttl_seconds
        client = await self._get_redis()
        return int(await client.zcount(self.workers_key, time.time() - window, "+inf"))

    async def record_processing_latency(self, duration_ms: float) -> None:
        client = await self._get_redis()
        async with client.pipeline(transaction=True) as pipe:
            pipe.hincrbyfloat(self.latency_key, "total_ms", duration_ms)
            pipe.hincrby(self.latency_key, "count", 1)
            await pipe.execute()

    async def avg_processing_latency_ms(self) -> Optional[float]:
        client = await self._get_redis()
        total_ms, count = await client.hmget(self.latency_key, ["total_ms", "count"])
        if not count or int(count) == 0:
            return None
        return float(total_ms) / int(count)

    async def record_error(self) -> None:
        now = time.time()
        client = await self._get_redis()
        async with client.pipeline(transaction=True) as pipe:
            pipe.zadd(self.errors_key, {f"{now}:{uuid4().hex[:8]}": now})
            pipe.zremrangebyscore(self.errors_key, "-inf", now - 3600)
            await pipe.execute()

    async def errors_last_hour(self) -> int:
        client = await self._get_redis()
        return int(await client.zcount(self.errors_key, time.time() - 3600, "+inf"))

    # ------------------------------------------------------------------
    # Stats and maintenance
    # ------------------------------------------------------------------

    async def stats(self) -> QueueStats:
        client = await self._get_redis()
        async with client.pipeline(transaction=False) as pipe:
            pipe.hgetall(self.stats_key)
            pipe.zcount(self.processed_key, self._processed_cutoff(), "+inf")
            pipe.llen(self.pending_key)
            pipe.hlen(self.failed_key)
            pipe.llen(self.missing_key)
            pipe.scard(self.verified_inactive_key)
            raw_stats, processed, depth, failed, missing, inactive = await pipe.execute()

        return QueueStats(
            total_discovered=int(raw_stats.get("total_discovered", 0)),
            processed_count=int(processed),
            queue_depth=int(depth),
            failed_count=int(failed),
            missing_queue_depth=int(missing),
            verified_inactive_count=int(inactive),
            started_at=raw_stats.get("started_at"),
        )

    async def clear(self) -> int:
        """Delete all queue state for this namespace (operator tool only)."""
        client = await self._get_redis()
        deleted = await client.delete(*self.all_keys)
        logger.warning(f"Cleared queue namespace '{self.namespace}' ({deleted} keys)")
        return int(deleted)
