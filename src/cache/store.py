from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Callable, Protocol

import redis

from src.utils.config import AppConfig
from src.utils.logging import get_logger


logger = get_logger(component="cache_store")


class CacheStoreError(Exception):
    """A write (set/delete) did not reach the backing store."""


class CacheStore(Protocol):
    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def delete(self, key: str) -> None: ...


class MemoryCacheStore:
    """
    In-process key-value store.

    - Per-entry TTL, lazy expiration on read (ttl_seconds=0 disables expiry)
    - At most `max_entries` keys; the oldest write is evicted first
    - Set/delete on a single key are atomic with respect to the event loop
    """

    def __init__(
        self,
        *,
        ttl_seconds: int = 3600,
        max_entries: int = 280,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be > 0")
        self.ttl_seconds = int(ttl_seconds)
        self.max_entries = int(max_entries)
        self._clock = clock
        self._entries: dict[str, tuple[Any, float | None]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._entries[key]
            logger.debug("cache_entry_expired", key=key)
            return None
        return value

    async def set(self, key: str, value: Any) -> None:
        expires_at = self._clock() + self.ttl_seconds if self.ttl_seconds > 0 else None
        # Re-insert so dict order stays oldest-write-first.
        self._entries.pop(key, None)
        self._entries[key] = (value, expires_at)
        while len(self._entries) > self.max_entries:
            oldest = next(iter(self._entries))
            del self._entries[oldest]
            logger.debug("cache_entry_evicted", key=oldest)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)


def create_redis_client(url: str) -> redis.Redis:
    return redis.Redis.from_url(url, decode_responses=True)


class RedisCacheStore:
    """
    Redis-backed store.

    - Key: {key_prefix}{key}
    - Payload: compact JSON, written with SETEX (plain SET when ttl_seconds=0)
    - Reads: Redis failures and corrupt payloads are logged and read as a miss
    - Writes: Redis failures are logged and raised as CacheStoreError
    - Entry limits are left to the Redis eviction policy
    """

    def __init__(self, redis_client: redis.Redis, *, ttl_seconds: int = 3600, key_prefix: str = "countries:") -> None:
        self.redis = redis_client
        self.ttl_seconds = int(ttl_seconds)
        self.key_prefix = key_prefix

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def _get(self, key: str) -> Any | None:
        try:
            raw = self.redis.get(self._key(key))
        except redis.exceptions.RedisError:
            logger.warning("redis_get_failed", key=key)
            return None

        if not raw:
            return None

        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError, ValueError):
            logger.warning("redis_payload_invalid_json", key=key)
            return None

    def _set(self, key: str, value: Any) -> None:
        payload = json.dumps(value, separators=(",", ":"), ensure_ascii=False)
        try:
            if self.ttl_seconds > 0:
                self.redis.setex(self._key(key), self.ttl_seconds, payload)
            else:
                self.redis.set(self._key(key), payload)
        except redis.exceptions.RedisError as e:
            logger.warning("redis_set_failed", key=key, error=str(e))
            raise CacheStoreError(f"Redis SET failed for {key}: {e}") from e

    def _delete(self, key: str) -> None:
        try:
            self.redis.delete(self._key(key))
        except redis.exceptions.RedisError as e:
            logger.warning("redis_delete_failed", key=key, error=str(e))
            raise CacheStoreError(f"Redis DEL failed for {key}: {e}") from e

    async def get(self, key: str) -> Any | None:
        return await asyncio.to_thread(self._get, key)

    async def set(self, key: str, value: Any) -> None:
        await asyncio.to_thread(self._set, key, value)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._delete, key)


def create_cache_store(config: AppConfig) -> CacheStore:
    kind = (config.cache_store or "memory").strip().lower()
    if kind == "memory":
        return MemoryCacheStore(ttl_seconds=config.cache_ttl_seconds, max_entries=config.max_cache_entries)
    if kind == "redis":
        return RedisCacheStore(create_redis_client(config.redis_url), ttl_seconds=config.cache_ttl_seconds)
    raise ValueError(f"Unknown CACHE_STORE: {config.cache_store!r} (expected 'memory' or 'redis')")
