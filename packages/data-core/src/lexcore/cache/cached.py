"""Cache-backed read path composed over a TenantRepository.

Reads go through CacheManager.get_or_set; writes go straight to the
repository, whose change events drive invalidation.
"""

from __future__ import annotations

from typing import Any, Mapping

from lexcore.cache.keys import CacheKeySpec
from lexcore.cache.manager import CacheManager
from lexcore.db.repository import TenantRepository


class CachedRepository:
    def __init__(
        self,
        repository: TenantRepository,
        cache: CacheManager,
        ttl: int | None = None,
        list_ttl: int | None = None,
        tags: tuple[str, ...] = (),
    ) -> None:
        self.repository = repository
        self.cache = cache
        self.entity = repository.entity
        self._ttl = ttl
        self._list_ttl = list_ttl
        self._tags = tags

    async def find_by_id(self, entity_id: str) -> dict[str, Any] | None:
        spec = CacheKeySpec(self.entity, identifier=entity_id, tags=self._tags)
        return await self.cache.get_or_set(
            spec, lambda: self.repository.find_by_id(entity_id), self._ttl
        )

    async def find_many(
        self,
        filter: Mapping[str, Any] | None = None,
        *,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        params = {"filter": dict(filter or {}), "limit": limit, "offset": offset}
        spec = CacheKeySpec(self.entity, params=params, tags=self._tags)
        return await self.cache.get_or_set(
            spec,
            lambda: self.repository.find_many(filter, limit=limit, offset=offset),
            self._list_ttl,
        )

    async def create(self, data: Mapping[str, Any]) -> dict[str, Any]:
        return await self.repository.create(data)

    async def update(self, entity_id: str, data: Mapping[str, Any]) -> dict[str, Any]:
        return await self.repository.update(entity_id, data)

    async def delete(self, entity_id: str, *, hard: bool = False) -> None:
        await self.repository.delete(entity_id, hard=hard)
