"""Cache manager — tenant-prefixed get/set/get_or_set with single-flight loads.

Cache faults never reach the caller: reads fall through to the loader and
writes are skipped, with a warning in the log ("fail open").
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Iterable

from lexcore.cache.backend import CacheBackend
from lexcore.cache.keys import CacheKeyBuilder, CacheKeySpec
from lexcore.config import CoreSettings
from lexcore.errors import CacheUnavailableError, TenantAccessDeniedError
from lexcore.tenancy.context import TenantContextManager

logger = logging.getLogger(__name__)

Loader = Callable[[], Awaitable[Any]]


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    loads: int = 0
    errors: int = 0

    @property
    def hit_ratio(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return {"__datetime__": value.isoformat()}
    if isinstance(value, date):
        return {"__date__": value.isoformat()}
    raise TypeError(f"Cannot cache value of type {type(value).__name__}")


def _json_hook(obj: dict) -> Any:
    if len(obj) == 1:
        if "__datetime__" in obj:
            return datetime.fromisoformat(obj["__datetime__"])
        if "__date__" in obj:
            return date.fromisoformat(obj["__date__"])
    return obj


def encode_value(value: Any) -> bytes:
    return json.dumps(value, default=_json_default, separators=(",", ":")).encode()


def decode_value(raw: bytes | str) -> Any:
    return json.loads(raw, object_hook=_json_hook)


class CacheManager:
    def __init__(
        self,
        backend: CacheBackend,
        context: TenantContextManager,
        keys: CacheKeyBuilder | None = None,
        default_ttl: int = 600,
        list_ttl: int = 120,
        jitter_ratio: float = 0.1,
        rng: random.Random | None = None,
    ) -> None:
        self.backend = backend
        self.context = context
        self.keys = keys or CacheKeyBuilder()
        self.default_ttl = default_ttl
        self.list_ttl = list_ttl
        self.jitter_ratio = jitter_ratio
        self.stats = CacheStats()
        self._rng = rng or random.Random()
        self._inflight: dict[str, asyncio.Task] = {}

    @classmethod
    def from_settings(
        cls, backend: CacheBackend, context: TenantContextManager, settings: CoreSettings
    ) -> CacheManager:
        return cls(
            backend,
            context,
            keys=CacheKeyBuilder(settings.cache_key_prefix),
            default_ttl=settings.cache_default_ttl_seconds,
            list_ttl=settings.cache_list_ttl_seconds,
            jitter_ratio=settings.cache_ttl_jitter_ratio,
        )

    def build_key(self, spec: CacheKeySpec) -> str:
        return self.keys.build(self.context.get_current_tenant(), spec)

    def _ttl_for(self, spec: CacheKeySpec, ttl: int | None) -> int:
        base = ttl if ttl is not None else (self.list_ttl if spec.is_list else self.default_ttl)
        if base <= 0:
            raise ValueError("ttl must be positive")
        jitter = int(self._rng.uniform(0, base * self.jitter_ratio))
        return base + jitter

    async def _read(self, key: str) -> tuple[bool, Any]:
        try:
            raw = await self.backend.get(key)
        except CacheUnavailableError as e:
            self.stats.errors += 1
            logger.warning("Cache read failed for %s, falling back to source: %s", key, e)
            return False, None
        if raw is None:
            return False, None
        try:
            return True, decode_value(raw)
        except ValueError as e:
            self.stats.errors += 1
            logger.warning("Discarding undecodable cache entry %s: %s", key, e)
            return False, None

    async def _write(self, key: str, value: Any, ttl: int, tag_keys: Iterable[str]) -> None:
        try:
            payload = encode_value(value)
        except (TypeError, ValueError) as e:
            self.stats.errors += 1
            logger.warning("Not caching %s, value cannot be encoded: %s", key, e)
            return
        try:
            await self.backend.set(key, payload, ttl)
            for tag in tag_keys:
                await self.backend.add_to_tag(tag, key, ttl)
        except CacheUnavailableError as e:
            self.stats.errors += 1
            logger.warning("Cache write failed for %s: %s", key, e)

    async def get(self, spec: CacheKeySpec) -> Any | None:
        hit, value = await self._read(self.build_key(spec))
        if hit:
            self.stats.hits += 1
            return value
        self.stats.misses += 1
        return None

    async def set(self, spec: CacheKeySpec, value: Any, ttl: int | None = None) -> None:
        tenant_id = self.context.get_current_tenant()
        key = self.keys.build(tenant_id, spec)
        tags = [self.keys.tag_key(tenant_id, t) for t in spec.tags]
        await self._write(key, value, self._ttl_for(spec, ttl), tags)

    async def invalidate(self, spec: CacheKeySpec) -> None:
        key = self.build_key(spec)
        try:
            await self.backend.delete(key)
        except CacheUnavailableError as e:
            self.stats.errors += 1
            logger.warning("Cache delete failed for %s: %s", key, e)

    async def get_or_set(self, spec: CacheKeySpec, loader: Loader, ttl: int | None = None) -> Any:
        """Return the cached value for ``spec`` or load, store and return it.

        Concurrent misses on the same key within this process share one
        loader call.
        """
        tenant_id = self.context.get_current_tenant()
        key = self.keys.build(tenant_id, spec)
        tags = [self.keys.tag_key(tenant_id, t) for t in spec.tags]
        return await self._get_or_load(key, spec, loader, ttl, tags)

    async def get_or_set_cross_tenant(
        self,
        spec: CacheKeySpec,
        tenant_ids: Iterable[str],
        loader: Loader,
        ttl: int | None = None,
    ) -> Any:
        """Cache a consultant view spanning several tenants.

        The entry is registered against every covered tenant so a change in
        any of them purges it, whichever consultant cached it.
        """
        ctx = self.context.get_context()
        covered = sorted(set(tenant_ids))
        for tenant_id in covered:
            if not self.context.can_access_tenant(tenant_id):
                raise TenantAccessDeniedError(tenant_id)
        key = self.keys.cross_tenant_key(ctx.tenant_id, ctx.user_id, spec, covered)
        tags = [self.keys.cross_tenant_tag(t) for t in covered]
        tags += [self.keys.tag_key(t, tag) for t in covered for tag in spec.tags]
        return await self._get_or_load(key, spec, loader, ttl, tags)

    async def _get_or_load(
        self, key: str, spec: CacheKeySpec, loader: Loader, ttl: int | None, tags: list[str]
    ) -> Any:
        hit, value = await self._read(key)
        if hit:
            self.stats.hits += 1
            return value
        self.stats.misses += 1

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._load(key, spec, loader, ttl, tags))
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))
        # Shield: a cancelled waiter must not cancel the shared load.
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            task.exception()

    async def _load(self, key: str, spec: CacheKeySpec, loader: Loader, ttl: int | None, tags: list[str]) -> Any:
        self.stats.loads += 1
        value = await loader()
        if value is not None:
            await self._write(key, value, self._ttl_for(spec, ttl), tags)
        return value

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)
