"""Shared fast key-value store with TTL and atomic counters.

Architectural role:
    Backs the session-context cache, the answer cache and the quota counters.
    Uses `redis.asyncio` when `REDIS_URL` is configured and reachable. When Redis
    is missing, or a Redis call fails at runtime, the operation is served by a
    process-local bounded map instead so the turn keeps working. Cross-instance
    consistency is lost while degraded.

Atomicity:
    - `increment_with_ceiling` and `compare_and_set_hash` run as Lua scripts on
      Redis and under one `asyncio.Lock` locally. Both are single round-trips;
      no distributed lock exists beyond key granularity.

Local fallback:
    `cachetools.TLRUCache` with a per-item time-to-use, bounded by
    `local_max_entries`. Least-recently-used keys are evicted first.

Strict operations:
    Hash, scan and atomic operations accept `strict=True`. When Redis is
    configured, a strict call that cannot reach it raises `FastStoreUnavailable`
    instead of touching the local map. Quota counters use this: a local map
    would start every user from zero.
"""

from __future__ import annotations

import asyncio
import logging
import math
import os
import time
from dataclasses import dataclass
from typing import Any

from cachetools import TLRUCache
from redis.exceptions import RedisError

from tutor_pipeline.core.errors import FastStoreUnavailable


logger = logging.getLogger(__name__)


_INCREMENT_WITH_CEILING = """
local used = tonumber(redis.call('HGET', KEYS[1], 'used') or '0')
local overage = tonumber(redis.call('HGET', KEYS[1], 'overage') or '0')
local amount = tonumber(ARGV[1])
local limit = tonumber(ARGV[2])
local new_used = used + amount
if limit >= 0 and new_used > limit then
    overage = overage + (new_used - limit)
    new_used = limit
end
redis.call('HSET', KEYS[1], 'used', new_used, 'overage', overage)
return {new_used, overage}
"""

_COMPARE_AND_SET_HASH = """
local current = redis.call('HGET', KEYS[1], ARGV[1]) or ''
if current ~= ARGV[2] then
    return 0
end
for i = 3, #ARGV, 2 do
    redis.call('HSET', KEYS[1], ARGV[i], ARGV[i + 1])
end
return 1
"""


@dataclass(frozen=True)
class FastStoreConfig:
    """Runtime configuration for `FastStore`.

    Relevant environment variables:
        - `REDIS_URL`
        - `FAST_STORE_LOCAL_MAX`
        - `FAST_STORE_TIMEOUT_SECONDS`
    """

    redis_url: str = os.getenv("REDIS_URL", "").strip()
    local_max_entries: int = int(os.getenv("FAST_STORE_LOCAL_MAX", "10000"))
    op_timeout_seconds: float = float(os.getenv("FAST_STORE_TIMEOUT_SECONDS", "0.5"))


@dataclass
class _LocalItem:
    value: Any
    ttl: float | None


def _time_to_use(_key: str, item: _LocalItem, now: float) -> float:
    if item.ttl is None:
        return math.inf
    return now + item.ttl


class FastStore:
    """Async key-value store with Redis primary and local bounded fallback."""

    def __init__(self, config: FastStoreConfig | None = None, client: Any = None) -> None:
        self.config = config or FastStoreConfig()
        self._client = client
        self._local: TLRUCache = TLRUCache(
            maxsize=max(1, self.config.local_max_entries),
            ttu=_time_to_use,
            timer=time.monotonic,
        )
        self._lock = asyncio.Lock()
        self._increment_script = None
        self._cas_script = None
        self.degraded = client is None
        self._redis_configured = client is not None or bool(self.config.redis_url)
        if client is not None:
            self._register_scripts()

    # =========================================================
    # LIFECYCLE
    # =========================================================

    async def start(self) -> None:
        """Connect to Redis when configured; stay local otherwise."""
        if self._client is None and self.config.redis_url:
            try:
                import redis.asyncio as redis

                self._client = redis.from_url(
                    self.config.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                )
                await asyncio.wait_for(self._client.ping(), self.config.op_timeout_seconds)
                logger.info("Fast store using Redis backend")
            except (RedisError, OSError, asyncio.TimeoutError) as exc:
                logger.warning("Redis unavailable for fast store, using local map: %s", exc)
                self._client = None

        if self._client is not None:
            self._register_scripts()
            self.degraded = False
        else:
            logger.info("Fast store using in-process backend")
            self.degraded = True

    async def close(self) -> None:
        if self._client is not None:
            try:
                await self._client.aclose()
            except (RedisError, OSError):
                logger.exception("Failed to close Redis client")
            self._client = None

    async def ping(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(await self._redis(self._client.ping()))
        except (RedisError, OSError, asyncio.TimeoutError):
            return False

    async def _redis(self, awaitable):
        return await asyncio.wait_for(awaitable, self.config.op_timeout_seconds)

    def _register_scripts(self) -> None:
        self._increment_script = self._client.register_script(_INCREMENT_WITH_CEILING)
        self._cas_script = self._client.register_script(_COMPARE_AND_SET_HASH)

    def _fallback(self, op: str, key: str, exc: BaseException, strict: bool = False) -> None:
        if strict:
            raise FastStoreUnavailable(f"fast store {op} failed key={key}: {exc}") from exc
        if not self.degraded:
            logger.warning("Fast store degraded to local map op=%s key=%s error=%s", op, key, exc)
        self.degraded = True

    def _require_local_ok(self, op: str, key: str, strict: bool) -> None:
        if strict and self._redis_configured:
            raise FastStoreUnavailable(f"fast store {op} needs Redis key={key}: not connected")

    # =========================================================
    # LOCAL HELPERS
    # =========================================================

    def _local_get(self, key: str) -> _LocalItem | None:
        return self._local.get(key)

    def _local_put(self, key: str, value: Any, ttl: float | None) -> None:
        self._local[key] = _LocalItem(value, ttl)

    # =========================================================
    # STRINGS
    # =========================================================

    async def get(self, key: str) -> str | None:
        if self._client is not None:
            try:
                return await self._redis(self._client.get(key))
            except (RedisError, OSError, asyncio.TimeoutError) as exc:
                self._fallback("get", key, exc)

        item = self._local_get(key)
        if item is None or not isinstance(item.value, str):
            return None
        return item.value

    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        if self._client is not None:
            try:
                await self._redis(self._client.set(key, value, ex=ttl))
                return
            except (RedisError, OSError, asyncio.TimeoutError) as exc:
                self._fallback("set", key, exc)

        self._local_put(key, value, ttl)

    async def delete(self, *keys: str) -> None:
        if not keys:
            return
        if self._client is not None:
            try:
                await self._redis(self._client.delete(*keys))
                return
            except (RedisError, OSError, asyncio.TimeoutError) as exc:
                self._fallback("delete", keys[0], exc)

        for key in keys:
            self._local.pop(key, None)

    async def touch(self, key: str, ttl: int) -> None:
        """Refresh a key's TTL (sliding expiry)."""
        if self._client is not None:
            try:
                await self._redis(self._client.expire(key, ttl))
                return
            except (RedisError, OSError, asyncio.TimeoutError) as exc:
                self._fallback("touch", key, exc)

        item = self._local_get(key)
        if item is not None:
            self._local_put(key, item.value, ttl)

    async def scan(self, prefix: str, strict: bool = False) -> list[str]:
        if self._client is not None:
            try:
                keys = []
                async for key in self._client.scan_iter(match=f"{prefix}*"):
                    keys.append(key)
                return keys
            except (RedisError, OSError, asyncio.TimeoutError) as exc:
                self._fallback("scan", prefix, exc, strict)

        self._require_local_ok("scan", prefix, strict)
        self._local.expire()
        return [key for key in list(self._local.keys()) if key.startswith(prefix)]

    # =========================================================
    # SETS
    # =========================================================

    async def add_to_set(self, key: str, member: str, ttl: int | None = None) -> None:
        if self._client is not None:
            try:
                await self._redis(self._client.sadd(key, member))
                if ttl:
                    await self._redis(self._client.expire(key, ttl))
                return
            except (RedisError, OSError, asyncio.TimeoutError) as exc:
                self._fallback("sadd", key, exc)

        async with self._lock:
            item = self._local_get(key)
            members = set(item.value) if item is not None and isinstance(item.value, set) else set()
            members.add(member)
            self._local_put(key, members, ttl if ttl else (item.ttl if item else None))

    async def set_members(self, key: str) -> set[str]:
        if self._client is not None:
            try:
                return set(await self._redis(self._client.smembers(key)))
            except (RedisError, OSError, asyncio.TimeoutError) as exc:
                self._fallback("smembers", key, exc)

        item = self._local_get(key)
        if item is None or not isinstance(item.value, set):
            return set()
        return set(item.value)

    async def remove_from_set(self, key: str, member: str) -> None:
        if self._client is not None:
            try:
                await self._redis(self._client.srem(key, member))
                return
            except (RedisError, OSError, asyncio.TimeoutError) as exc:
                self._fallback("srem", key, exc)

        async with self._lock:
            item = self._local_get(key)
            if item is not None and isinstance(item.value, set):
                members = set(item.value)
                members.discard(member)
                self._local_put(key, members, item.ttl)

    # =========================================================
    # HASHES
    # =========================================================

    async def get_hash(self, key: str, strict: bool = False) -> dict[str, str]:
        if self._client is not None:
            try:
                return dict(await self._redis(self._client.hgetall(key)))
            except (RedisError, OSError, asyncio.TimeoutError) as exc:
                self._fallback("hgetall", key, exc, strict)

        self._require_local_ok("hgetall", key, strict)
        item = self._local_get(key)
        if item is None or not isinstance(item.value, dict):
            return {}
        return dict(item.value)

    async def set_hash(self, key: str, mapping: dict[str, Any], strict: bool = False) -> None:
        payload = {k: str(v) for k, v in mapping.items()}
        if self._client is not None:
            try:
                await self._redis(self._client.hset(key, mapping=payload))
                return
            except (RedisError, OSError, asyncio.TimeoutError) as exc:
                self._fallback("hset", key, exc, strict)

        self._require_local_ok("hset", key, strict)
        async with self._lock:
            item = self._local_get(key)
            current = dict(item.value) if item is not None and isinstance(item.value, dict) else {}
            current.update(payload)
            self._local_put(key, current, item.ttl if item else None)

    async def increment_with_ceiling(
        self,
        key: str,
        amount: int,
        limit: int | None,
        strict: bool = False,
    ) -> tuple[int, int]:
        """Atomically add `amount` to hash field `used`, clamped at `limit`.

        Args:
            key: Counter hash key.
            amount: Increment (non-negative).
            limit: Ceiling for `used`; `None` means unlimited.

        Returns:
            Tuple `(used, overage)` after the increment. Any amount that would
            push `used` past `limit` is added to `overage` instead.
        """
        ceiling = -1 if limit is None else int(limit)

        if self._client is not None and self._increment_script is not None:
            try:
                used, overage = await self._redis(
                    self._increment_script(keys=[key], args=[int(amount), ceiling])
                )
                return int(used), int(overage)
            except (RedisError, OSError, asyncio.TimeoutError) as exc:
                self._fallback("increment_with_ceiling", key, exc, strict)

        self._require_local_ok("increment_with_ceiling", key, strict)
        async with self._lock:
            item = self._local_get(key)
            current = dict(item.value) if item is not None and isinstance(item.value, dict) else {}
            used = int(current.get("used", 0)) + int(amount)
            overage = int(current.get("overage", 0))
            if ceiling >= 0 and used > ceiling:
                overage += used - ceiling
                used = ceiling
            current["used"] = str(used)
            current["overage"] = str(overage)
            self._local_put(key, current, item.ttl if item else None)
            return used, overage

    async def compare_and_set_hash(
        self,
        key: str,
        field_name: str,
        expected: str | None,
        mapping: dict[str, Any],
        strict: bool = False,
    ) -> bool:
        """Write `mapping` only when `field_name` currently equals `expected`.

        `expected=None` matches an absent field, which makes this usable as a
        create-if-absent primitive.
        """
        expected_value = "" if expected is None else str(expected)
        flat: list[str] = []
        for k, v in mapping.items():
            flat.extend([k, str(v)])

        if self._client is not None and self._cas_script is not None:
            try:
                result = await self._redis(
                    self._cas_script(keys=[key], args=[field_name, expected_value, *flat])
                )
                return bool(int(result))
            except (RedisError, OSError, asyncio.TimeoutError) as exc:
                self._fallback("compare_and_set_hash", key, exc, strict)

        self._require_local_ok("compare_and_set_hash", key, strict)
        async with self._lock:
            item = self._local_get(key)
            current = dict(item.value) if item is not None and isinstance(item.value, dict) else {}
            if current.get(field_name, "") != expected_value:
                return False
            current.update({k: str(v) for k, v in mapping.items()})
            self._local_put(key, current, item.ttl if item else None)
            return True
