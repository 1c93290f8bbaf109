"""Distributed cache backends.

RedisCacheBackend is the production backend. InMemoryCacheBackend serves
tests and single-process development; it can be taken offline to exercise
the fail-open paths.

Backends raise CacheUnavailableError for every transport fault; callers
decide whether to absorb it.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import time
from abc import ABC, abstractmethod

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from lexcore.errors import CacheUnavailableError

logger = logging.getLogger(__name__)

_REDIS_FAULTS = (RedisError, OSError, asyncio.TimeoutError)


class CacheBackend(ABC):
    @abstractmethod
    async def get(self, key: str) -> bytes | None: ...

    @abstractmethod
    async def set(self, key: str, value: bytes, ttl_seconds: int) -> None: ...

    @abstractmethod
    async def delete(self, *keys: str) -> int: ...

    @abstractmethod
    async def delete_pattern(self, pattern: str) -> int: ...

    @abstractmethod
    async def add_to_tag(self, tag: str, key: str, ttl_seconds: int) -> None: ...

    @abstractmethod
    async def pop_tag(self, tag: str) -> list[str]:
        """Atomically read and remove a tag set, returning its member keys."""


class RedisCacheBackend(CacheBackend):
    def __init__(self, client: aioredis.Redis, scan_count: int = 500) -> None:
        self._client = client
        self._scan_count = scan_count

    async def get(self, key: str) -> bytes | None:
        try:
            return await self._client.get(key)
        except _REDIS_FAULTS as e:
            raise CacheUnavailableError(f"GET failed: {e}") from e

    async def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        try:
            await self._client.set(key, value, ex=ttl_seconds)
        except _REDIS_FAULTS as e:
            raise CacheUnavailableError(f"SET failed: {e}") from e

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return await self._client.delete(*keys)
        except _REDIS_FAULTS as e:
            raise CacheUnavailableError(f"DEL failed: {e}") from e

    async def delete_pattern(self, pattern: str) -> int:
        deleted = 0
        batch: list[str | bytes] = []
        try:
            async for key in self._client.scan_iter(match=pattern, count=self._scan_count):
                batch.append(key)
                if len(batch) >= self._scan_count:
                    deleted += await self._client.delete(*batch)
                    batch.clear()
            if batch:
                deleted += await self._client.delete(*batch)
        except _REDIS_FAULTS as e:
            raise CacheUnavailableError(f"SCAN/DEL {pattern} failed: {e}") from e
        return deleted

    async def add_to_tag(self, tag: str, key: str, ttl_seconds: int) -> None:
        # Tag set must outlive every member key.
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.sadd(tag, key)
                pipe.expire(tag, ttl_seconds, nx=True)
                pipe.expire(tag, ttl_seconds, gt=True)
                await pipe.execute()
        except _REDIS_FAULTS as e:
            raise CacheUnavailableError(f"SADD {tag} failed: {e}") from e

    async def pop_tag(self, tag: str) -> list[str]:
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.smembers(tag)
                pipe.delete(tag)
                members, _ = await pipe.execute()
        except _REDIS_FAULTS as e:
            raise CacheUnavailableError(f"SMEMBERS {tag} failed: {e}") from e
        return [m.decode() if isinstance(m, bytes) else m for m in members]


class InMemoryCacheBackend(CacheBackend):
    def __init__(self) -> None:
        self._values: dict[str, tuple[bytes, float]] = {}
        self._tags: dict[str, set[str]] = {}
        self.online = True

    def _check(self) -> None:
        if not self.online:
            raise CacheUnavailableError("in-memory cache offline")

    def _live(self, key: str) -> bytes | None:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= time.monotonic():
            del self._values[key]
            return None
        return value

    def keys(self) -> list[str]:
        return [k for k in list(self._values) if self._live(k) is not None]

    async def get(self, key: str) -> bytes | None:
        self._check()
        return self._live(key)

    async def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        self._check()
        self._values[key] = (value, time.monotonic() + ttl_seconds)

    async def delete(self, *keys: str) -> int:
        self._check()
        deleted = 0
        for key in keys:
            if self._live(key) is not None:
                deleted += 1
            self._values.pop(key, None)
        return deleted

    async def delete_pattern(self, pattern: str) -> int:
        self._check()
        matched = [k for k in self.keys() if fnmatch.fnmatchcase(k, pattern)]
        return await self.delete(*matched)

    async def add_to_tag(self, tag: str, key: str, ttl_seconds: int) -> None:
        self._check()
        self._tags.setdefault(tag, set()).add(key)

    async def pop_tag(self, tag: str) -> list[str]:
        self._check()
        return sorted(self._tags.pop(tag, set()))
