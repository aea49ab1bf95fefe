import asyncio
import json
import logging
import time
from typing import Any

import redis.asyncio as redis

from giftpool.core.config import settings


logger = logging.getLogger("giftpool.balance_cache")

SNAPSHOT_KEY = "float:balance:snapshot"


class BalanceCache:
    """Shared float-balance snapshot: Redis when reachable, process memory otherwise.

    Last writer wins. Entries expire after ``ttl`` seconds on both backends, so
    a reader never sees a snapshot older than the freshness budget.
    """

    def __init__(
        self,
        redis_dsn: str | None = None,
        ttl: int | None = None,
        enabled: bool | None = None,
        allow_memory_fallback: bool = True,
    ) -> None:
        self._redis_dsn = redis_dsn if redis_dsn is not None else settings.redis_dsn
        self._ttl = ttl or settings.float_balance_max_age_seconds
        self._enabled = enabled if enabled is not None else settings.float_cache_enabled
        self._allow_memory_fallback = allow_memory_fallback
        self._redis: redis.Redis | None = None
        self._connect_lock = asyncio.Lock()
        self._cooldown_until_monotonic = 0.0
        self._connect_failures = 0
        self._memory: tuple[float, str] | None = None
        self._hits = 0
        self._misses = 0
        self._errors = 0
        self._sets = 0

    @property
    def ttl(self) -> int:
        return self._ttl

    def _in_cooldown(self) -> bool:
        return time.monotonic() < self._cooldown_until_monotonic

    def _mark_redis_failed(self, exc: Exception) -> None:
        self._redis = None
        self._connect_failures += 1
        cooldown = min(60.0, 1.0 * (2 ** min(self._connect_failures, 6)))
        self._cooldown_until_monotonic = time.monotonic() + cooldown
        logger.warning(
            "BalanceCache redis unavailable failures=%s cooldown_s=%.0f error=%s",
            self._connect_failures,
            cooldown,
            exc,
        )

    def _mem_get(self) -> str | None:
        if self._memory is None:
            return None
        expires_at, payload = self._memory
        if expires_at <= time.monotonic():
            self._memory = None
            return None
        return payload

    def _mem_set(self, payload: str, ttl_s: int) -> None:
        self._memory = (time.monotonic() + max(1, int(ttl_s)), payload)

    async def _get_redis(self) -> redis.Redis | None:
        if not self._enabled:
            return None
        if not self._redis_dsn or not str(self._redis_dsn).strip():
            return None
        if self._redis is not None:
            return self._redis
        if self._in_cooldown():
            return None
        async with self._connect_lock:
            if self._redis is not None:
                return self._redis
            if self._in_cooldown():
                return None
            try:
                client = redis.from_url(
                    self._redis_dsn,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_connect_timeout=2,
                    socket_timeout=2,
                    retry_on_timeout=True,
                    health_check_interval=30,
                )
                await client.ping()
                self._redis = client
                self._connect_failures = 0
                self._cooldown_until_monotonic = 0.0
                logger.info("BalanceCache connected redis=%s", self._redis_dsn)
            except (redis.RedisError, OSError) as exc:
                self._mark_redis_failed(exc)
        return self._redis

    async def get_snapshot(self) -> dict[str, Any] | None:
        try:
            client = await self._get_redis()
            if client is None:
                cached = self._mem_get() if self._allow_memory_fallback else None
            else:
                cached = await client.get(SNAPSHOT_KEY)
            if not cached:
                self._misses += 1
                return None
            self._hits += 1
            return json.loads(cached)
        except redis.RedisError as exc:
            self._errors += 1
            self._mark_redis_failed(exc)
            return None
        except ValueError as exc:
            self._errors += 1
            logger.debug("BalanceCache get_snapshot parse error error=%s", exc)
            return None

    async def set_snapshot(self, payload: dict[str, Any], ttl: int | None = None) -> bool:
        value = json.dumps(payload)
        effective_ttl = ttl or self._ttl
        try:
            client = await self._get_redis()
            if client is None:
                if not self._allow_memory_fallback:
                    return False
                self._mem_set(value, effective_ttl)
            else:
                await client.setex(SNAPSHOT_KEY, effective_ttl, value)
            self._sets += 1
            return True
        except redis.RedisError as exc:
            self._errors += 1
            self._mark_redis_failed(exc)
            if self._allow_memory_fallback:
                self._mem_set(value, effective_ttl)
                return True
            return False

    async def invalidate(self) -> int:
        deleted = 1 if self._memory is not None else 0
        self._memory = None
        try:
            client = await self._get_redis()
            if client is None:
                return deleted
            return int(await client.delete(SNAPSHOT_KEY))
        except redis.RedisError as exc:
            self._errors += 1
            self._mark_redis_failed(exc)
            return deleted

    async def get_stats(self) -> dict[str, Any]:
        total = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "errors": self._errors,
            "sets": self._sets,
            "hit_rate": round(self._hits / total * 100, 2) if total else 0,
            "redis_connected": self._redis is not None,
            "memory_fallback": self._allow_memory_fallback,
            "cooldown_s": max(0.0, self._cooldown_until_monotonic - time.monotonic()),
            "connect_failures": self._connect_failures,
            "ttl": self._ttl,
        }


balance_cache = BalanceCache()
