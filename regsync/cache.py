from __future__ import annotations

import json
import hashlib
import asyncio
from typing import Any, List, Optional, Tuple

from redis.asyncio import Redis, ConnectionPool
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import RedisError

import structlog
from regsync.config import settings
from regsync.exceptions import CacheError

log = structlog.get_logger(__name__)

_pool: Optional[ConnectionPool] = None

KEY_PREFIX = "regsync:v1"
STATUS_KEY_PATTERN = f"{KEY_PREFIX}:*:status*"
HEALTH_LOG_KEY = f"{KEY_PREFIX}:health:log"


# ── Pool lifecycle ────────────────────────────────────────────────────────────

async def init_redis_pool() -> None:
    global _pool
    _pool = ConnectionPool.from_url(
        settings.REDIS_URL,
        max_connections=settings.REDIS_POOL_SIZE,
        socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
        socket_connect_timeout=settings.REDIS_CONNECT_TIMEOUT,
        decode_responses=True,
        retry=Retry(ExponentialBackoff(), retries=3),
        retry_on_error=[RedisError],
    )
    log.info("redis.pool.initialized", pool_size=settings.REDIS_POOL_SIZE)


async def close_redis_pool() -> None:
    global _pool
    if _pool:
        await _pool.aclose()
        _pool = None
        log.info("redis.pool.closed")


def get_redis() -> Redis:
    if _pool is None:
        raise CacheError("Redis pool not initialized")
    return Redis(connection_pool=_pool)


async def ping_redis() -> bool:
    try:
        r = get_redis()
        return await r.ping()
    except (RedisError, CacheError):
        return False


# ── Key builder ───────────────────────────────────────────────────────────────

def build_key(*parts: Any) -> str:
    raw = ":".join(str(p) for p in parts)
    digest = hashlib.sha256(raw.encode()).hexdigest()[:12]
    slug = raw[:60].replace(" ", "_")
    return f"{KEY_PREFIX}:{digest}:{slug}"


# ── Stale-while-revalidate primitives ────────────────────────────────────────
#
# Two keys per logical entry:
#   <key>         → the payload, kept for ttl + CACHE_STALE_GRACE
#   <key>:fresh   → sentinel that expires after ttl
#
# A hit without the sentinel is stale: serve it, then recompute.

async def cache_get(key: str) -> Tuple[Optional[Any], bool]:
    """
    Returns (value, is_stale).
    value=None means total cache miss.
    """
    try:
        r = get_redis()
        pipe = r.pipeline()
        await pipe.get(key)
        await pipe.exists(f"{key}:fresh")
        value_raw, is_fresh = await pipe.execute()

        if value_raw is None:
            return None, False

        return json.loads(value_raw), not bool(is_fresh)
    except (RedisError, CacheError) as e:
        log.warning("cache.get.error", key=key, error=str(e))
        return None, False


async def cache_set(key: str, value: Any, ttl: int) -> None:
    try:
        r = get_redis()
        stale_ttl = ttl + settings.CACHE_STALE_GRACE
        serialized = json.dumps(value, default=str)
        pipe = r.pipeline()
        await pipe.setex(key, stale_ttl, serialized)
        await pipe.setex(f"{key}:fresh", ttl, "1")
        await pipe.execute()
    except (RedisError, CacheError) as e:
        log.warning("cache.set.error", key=key, error=str(e))


async def invalidate_pattern(pattern: str) -> int:
    """SCAN rather than KEYS so a large keyspace never blocks Redis."""
    try:
        r = get_redis()
        deleted = 0
        async for key in r.scan_iter(match=pattern, count=100):
            await r.delete(key)
            deleted += 1
        if deleted:
            log.info("cache.invalidated", pattern=pattern, count=deleted)
        return deleted
    except (RedisError, CacheError) as e:
        log.warning("cache.invalidate.error", pattern=pattern, error=str(e))
        return 0


async def invalidate_status(*_: Any) -> int:
    """Drop cached sync/status summaries; used as the orchestrator's completion hook."""
    return await invalidate_pattern(STATUS_KEY_PATTERN)


# ── Health snapshot log ───────────────────────────────────────────────────────

async def push_health_snapshot(snapshot: dict) -> None:
    try:
        r = get_redis()
        pipe = r.pipeline()
        await pipe.lpush(HEALTH_LOG_KEY, json.dumps(snapshot, default=str))
        await pipe.ltrim(HEALTH_LOG_KEY, 0, settings.HEALTH_LOG_SIZE - 1)
        await pipe.execute()
    except (RedisError, CacheError) as e:
        log.warning("cache.health_log.error", error=str(e))


async def recent_health_snapshots(limit: int = 10) -> List[dict]:
    try:
        r = get_redis()
        raw = await r.lrange(HEALTH_LOG_KEY, 0, limit - 1)
    except (RedisError, CacheError) as e:
        log.warning("cache.health_log.error", error=str(e))
        return []
    return [json.loads(item) for item in raw]


# ── Stats (guarded by asyncio.Lock) ───────────────────────────────────────────

_stats_lock = asyncio.Lock()
_stats = {"hits": 0, "misses": 0, "stale_hits": 0}


async def record_hit(stale: bool = False) -> None:
    async with _stats_lock:
        if stale:
            _stats["stale_hits"] += 1
        else:
            _stats["hits"] += 1


async def record_miss() -> None:
    async with _stats_lock:
        _stats["misses"] += 1


async def get_cache_stats() -> dict:
    async with _stats_lock:
        total = _stats["hits"] + _stats["misses"] + _stats["stale_hits"]
        hit_rate = round((_stats["hits"] + _stats["stale_hits"]) / total, 4) if total else 0.0
        return {**_stats, "total_requests": total, "hit_rate": hit_rate}
