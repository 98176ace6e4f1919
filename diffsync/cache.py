from __future__ import annotations

import hashlib
import json
from typing import Any, Optional

import structlog
from redis.asyncio import ConnectionPool, Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import RedisError

from diffsync.config import Settings
from diffsync.schemas import AnalysisStatus

log = structlog.get_logger(__name__)


# ── Client lifecycle ──────────────────────────────────────────────────────────

def open_redis(settings: Settings) -> Redis:
    pool = ConnectionPool.from_url(
        settings.REDIS_URL,
        max_connections=settings.REDIS_POOL_SIZE,
        socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
        socket_connect_timeout=settings.REDIS_CONNECT_TIMEOUT,
        decode_responses=True,
        retry=Retry(ExponentialBackoff(), retries=3),
        retry_on_error=[RedisError],
    )
    log.info("redis.pool.initialized", pool_size=settings.REDIS_POOL_SIZE)
    # The client owns the pool, so aclose() releases both.
    return Redis.from_pool(pool)


async def close_redis(redis: Redis) -> None:
    await redis.aclose()
    log.info("redis.pool.closed")


async def ping_redis(redis: Redis) -> bool:
    try:
        return bool(await redis.ping())
    except (RedisError, OSError):
        return False


# ── Key builder ───────────────────────────────────────────────────────────────

def build_key(*parts: Any) -> str:
    raw = ":".join(str(p) for p in parts)
    digest = hashlib.sha256(raw.encode()).hexdigest()[:12]
    slug = raw[:60].replace(" ", "_")
    return f"diffsync:v1:{digest}:{slug}"


async def cache_get(redis: Redis, key: str) -> Optional[Any]:
    try:
        raw = await redis.get(key)
    except RedisError as e:
        log.warning("cache.get.error", key=key, error=str(e))
        return None
    return json.loads(raw) if raw is not None else None


async def cache_set(redis: Redis, key: str, value: Any, ttl: int) -> None:
    try:
        await redis.setex(key, ttl, json.dumps(value, default=str))
    except RedisError as e:
        log.warning("cache.set.error", key=key, error=str(e))


# ── Async analysis handles ────────────────────────────────────────────────────

class AnalysisStatusStore:
    """Status of submitted analyses, kept for ``ttl`` seconds after the last update."""

    def __init__(self, redis: Redis, ttl: int = 86400):
        self.redis = redis
        self.ttl = ttl

    @staticmethod
    def key(analysis_id: str) -> str:
        return build_key("analysis", analysis_id)

    async def save(self, status: AnalysisStatus, required: bool = False) -> None:
        """Store ``status``; with ``required`` a RedisError propagates instead of being logged."""
        key = self.key(status.analysis_id)
        value = status.model_dump(mode="json", by_alias=True)
        if required:
            await self.redis.setex(key, self.ttl, json.dumps(value, default=str))
        else:
            await cache_set(self.redis, key, value, self.ttl)

    async def load(self, analysis_id: str) -> Optional[AnalysisStatus]:
        data = await cache_get(self.redis, self.key(analysis_id))
        return AnalysisStatus.model_validate(data) if data is not None else None
