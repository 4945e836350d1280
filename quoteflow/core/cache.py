"""
Query-result cache with tag invalidation
=========================================

A small cache port used for customer-facing read models (proposal lists,
portal status).  Entries are stored under a key and associated with one or
more tags; mutating a proposal invalidates every entry carrying its tags.

Two implementations:
  - ``RedisCache``    -- production backend (``redis.asyncio``), tags are
                         Redis sets of member keys.
  - ``InMemoryCache`` -- process-local dict, used in tests and local dev.

The payment verification transaction never reads from this cache.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Iterable, Optional, Protocol

from redis.asyncio import Redis

from quoteflow.core.config import settings

logger = logging.getLogger(__name__)

_TAG_PREFIX = "tag:"


def client_tag(tenant_id: Any, client_id: Any) -> str:
    return f"client:{tenant_id}:{client_id}"


def proposal_tag(proposal_id: Any) -> str:
    return f"proposal:{proposal_id}"


class CachePort(Protocol):
    async def get(self, key: str) -> Optional[Any]: ...

    async def set(
        self,
        key: str,
        value: Any,
        *,
        tags: Iterable[str] = (),
        ttl: Optional[int] = None,
    ) -> None: ...

    async def invalidate_by_tags(self, tags: Iterable[str]) -> int: ...


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------

class RedisCache:
    """Tag-aware cache over a shared ``redis.asyncio`` client."""

    def __init__(self, client: Redis, *, default_ttl: int = 300) -> None:
        self._client = client
        self._default_ttl = default_ttl

    async def get(self, key: str) -> Optional[Any]:
        raw = await self._client.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    async def set(
        self,
        key: str,
        value: Any,
        *,
        tags: Iterable[str] = (),
        ttl: Optional[int] = None,
    ) -> None:
        expires = ttl or self._default_ttl
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.set(key, json.dumps(value, default=str), ex=expires)
            for tag in tags:
                pipe.sadd(_TAG_PREFIX + tag, key)
                pipe.expire(_TAG_PREFIX + tag, expires)
            await pipe.execute()

    async def invalidate_by_tags(self, tags: Iterable[str]) -> int:
        removed = 0
        for tag in tags:
            tag_key = _TAG_PREFIX + tag
            members = await self._client.smembers(tag_key)
            if members:
                removed += await self._client.delete(*members)
            await self._client.delete(tag_key)
        return removed

    async def close(self) -> None:
        await self._client.aclose()


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------

class InMemoryCache:
    """Process-local cache with the same semantics as ``RedisCache``."""

    def __init__(self, *, default_ttl: int = 300) -> None:
        self._default_ttl = default_ttl
        self._entries: dict[str, tuple[float, str]] = {}
        self._tags: dict[str, set[str]] = {}

    async def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, raw = entry
        if expires_at < time.monotonic():
            self._entries.pop(key, None)
            return None
        return json.loads(raw)

    async def set(
        self,
        key: str,
        value: Any,
        *,
        tags: Iterable[str] = (),
        ttl: Optional[int] = None,
    ) -> None:
        expires_at = time.monotonic() + (ttl or self._default_ttl)
        self._entries[key] = (expires_at, json.dumps(value, default=str))
        for tag in tags:
            self._tags.setdefault(tag, set()).add(key)

    async def invalidate_by_tags(self, tags: Iterable[str]) -> int:
        removed = 0
        for tag in tags:
            for key in self._tags.pop(tag, set()):
                if self._entries.pop(key, None) is not None:
                    removed += 1
        return removed

    def clear(self) -> None:
        self._entries.clear()
        self._tags.clear()


# ---------------------------------------------------------------------------
# Shared instance
# ---------------------------------------------------------------------------

_cache: CachePort | None = None


def get_cache() -> CachePort:
    """Return the process-wide cache, creating it lazily from settings."""
    global _cache
    if _cache is None:
        if settings.cache_backend == "redis":
            _cache = RedisCache(
                Redis.from_url(settings.redis_url, decode_responses=True),
                default_ttl=settings.cache_ttl_seconds,
            )
        else:
            _cache = InMemoryCache(default_ttl=settings.cache_ttl_seconds)
        logger.info("Query cache initialised (backend=%s)", settings.cache_backend)
    return _cache


async def close_cache() -> None:
    global _cache
    if isinstance(_cache, RedisCache):
        await _cache.close()
    _cache = None
