from __future__ import annotations

import asyncio
import fnmatch
import json
import logging
import time
from collections import OrderedDict
from typing import Any, Dict, Generic, Iterable, List, Optional, Tuple, TypeVar

import redis.asyncio as redis
from redis.exceptions import RedisError

from .config import CacheConfig


logger = logging.getLogger(__name__)

T = TypeVar("T")


def progress_key(account: str) -> str:
    return f"progress:{account}"


def wallet_key(account: str, kind: str) -> str:
    # kind: summary/highlights/daily
    return f"wallet:{account}:{kind}"


def wallet_pattern(account: str) -> str:
    return f"wallet:{account}:*"


class LRUCache(Generic[T]):
    """Bounded in-process cache with per-entry expiry."""

    def __init__(self, maxsize: int) -> None:
        self.maxsize = maxsize
        self._data: "OrderedDict[str, Tuple[float, T]]" = OrderedDict()

    def get(self, key: str) -> Optional[T]:
        item = self._data.get(key)
        if item is None:
            return None
        expires_at, value = item
        if expires_at and expires_at <= time.monotonic():
            del self._data[key]
            return None
        self._data.move_to_end(key)
        return value

    def put(self, key: str, value: T, ttl: Optional[float] = None) -> None:
        if self.maxsize <= 0:
            return
        expires_at = time.monotonic() + ttl if ttl else 0.0
        self._data[key] = (expires_at, value)
        self._data.move_to_end(key)
        while len(self._data) > self.maxsize:
            self._data.popitem(last=False)

    def pop(self, key: str) -> None:
        self._data.pop(key, None)

    def clear(self) -> None:
        self._data.clear()

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None


class MemoryCache:
    """In-process stand-in for the external cache (single node, tests)."""

    def __init__(self, prefix: str = "") -> None:
        self.prefix = prefix
        self._lock = asyncio.Lock()
        self._data: Dict[str, Tuple[float, str]] = {}

    def _live(self, key: str) -> Optional[str]:
        item = self._data.get(key)
        if item is None:
            return None
        expires_at, raw = item
        if expires_at and expires_at <= time.monotonic():
            del self._data[key]
            return None
        return raw

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            raw = self._live(f"{self.prefix}{key}")
        return json.loads(raw) if raw is not None else None

    async def mget(self, keys: Iterable[str]) -> List[Optional[Any]]:
        keys = list(keys)
        async with self._lock:
            raws = [self._live(f"{self.prefix}{k}") for k in keys]
        return [json.loads(r) if r is not None else None for r in raws]

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        expires_at = time.monotonic() + ttl if ttl else 0.0
        async with self._lock:
            self._data[f"{self.prefix}{key}"] = (expires_at, json.dumps(value, default=str))

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(f"{self.prefix}{key}", None)

    async def delete_pattern(self, pattern: str) -> int:
        full = f"{self.prefix}{pattern}"
        async with self._lock:
            doomed = [k for k in self._data if fnmatch.fnmatchcase(k, full)]
            for k in doomed:
                del self._data[k]
        return len(doomed)

    async def close(self) -> None:
        return None


class RedisCache:
    """JSON values in redis. Errors degrade to a cache miss."""

    def __init__(self, redis_url: str, prefix: str = "wallet_pnl:") -> None:
        self.prefix = prefix
        self._redis = redis.from_url(redis_url, decode_responses=True)

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self._redis.get(f"{self.prefix}{key}")
        except RedisError as e:
            logger.warning("Redis get failed key=%s err=%s", key, e)
            return None
        return json.loads(raw) if raw else None

    async def mget(self, keys: Iterable[str]) -> List[Optional[Any]]:
        keys = list(keys)
        if not keys:
            return []
        try:
            raws = await self._redis.mget([f"{self.prefix}{k}" for k in keys])
        except RedisError as e:
            logger.warning("Redis mget failed n=%d err=%s", len(keys), e)
            return [None] * len(keys)
        return [json.loads(r) if r else None for r in raws]

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        raw = json.dumps(value, default=str)
        try:
            if ttl:
                await self._redis.setex(f"{self.prefix}{key}", ttl, raw)
            else:
                await self._redis.set(f"{self.prefix}{key}", raw)
        except RedisError as e:
            logger.warning("Redis set failed key=%s err=%s", key, e)

    async def delete(self, key: str) -> None:
        try:
            await self._redis.delete(f"{self.prefix}{key}")
        except RedisError as e:
            logger.warning("Redis delete failed key=%s err=%s", key, e)

    async def delete_pattern(self, pattern: str) -> int:
        deleted = 0
        try:
            batch: List[str] = []
            async for key in self._redis.scan_iter(match=f"{self.prefix}{pattern}", count=100):
                batch.append(key)
                if len(batch) >= 100:
                    deleted += await self._redis.delete(*batch)
                    batch = []
            if batch:
                deleted += await self._redis.delete(*batch)
        except RedisError as e:
            logger.warning("Redis pattern delete failed pattern=%s err=%s", pattern, e)
        return deleted

    async def close(self) -> None:
        await self._redis.aclose()


def build_cache(cfg: CacheConfig):
    if cfg.redis_url:
        logger.info("Cache: redis %s", cfg.redis_url)
        return RedisCache(cfg.redis_url, prefix=cfg.prefix)
    logger.info("Cache: in-process")
    return MemoryCache(prefix=cfg.prefix)
