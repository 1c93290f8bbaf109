"""Invalidation coordinator — turns change events into cache purges.

For a change ``{tenant_id, entity, id, action}``:

1. every list entry of the entity for that tenant is purged (filters are
   unpredictable, so any change invalidates all lists);
2. the ``entity:id`` entry is purged on update/delete;
3. entities related to it (``relate``) are purged the same way, transitively,
   together with the tag sets naming them;
4. consultant cross-tenant entries covering the tenant are purged.

Deleting an absent key is a no-op, so redelivered events are harmless.
Backend faults raise InvalidationDeliveryError for the bus to retry.
"""

from __future__ import annotations

import logging
from collections import deque

from lexcore.cache.backend import CacheBackend
from lexcore.cache.keys import CacheKeyBuilder
from lexcore.errors import CacheUnavailableError, InvalidationDeliveryError
from lexcore.events.bus import EventBus
from lexcore.events.envelope import ENTITY_CHANGED, ChangeAction, ChangeEvent, CloudEvent

logger = logging.getLogger(__name__)


class InvalidationCoordinator:
    def __init__(self, backend: CacheBackend, keys: CacheKeyBuilder | None = None) -> None:
        self.backend = backend
        self.keys = keys or CacheKeyBuilder()
        self._relations: dict[str, set[str]] = {}

    def relate(self, entity: str, *related: str) -> None:
        """Mutations of ``entity`` also invalidate caches of ``related``."""
        self._relations.setdefault(entity, set()).update(related)

    def related_entities(self, entity: str) -> list[str]:
        seen = {entity}
        order: list[str] = []
        queue = deque(self._relations.get(entity, ()))
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            order.append(current)
            queue.extend(self._relations.get(current, ()))
        return order

    def attach(self, bus: EventBus) -> None:
        bus.subscribe(ENTITY_CHANGED, self.handle_event)

    async def handle_event(self, event: CloudEvent) -> None:
        await self.invalidate(ChangeEvent.from_event(event))

    async def _purge_entity(self, tenant_id: str, entity: str) -> int:
        removed = await self.backend.delete_pattern(self.keys.list_pattern(tenant_id, entity))
        members = await self.backend.pop_tag(self.keys.tag_key(tenant_id, entity))
        if members:
            removed += await self.backend.delete(*members)
        return removed

    async def invalidate(self, change: ChangeEvent) -> int:
        tenant_id = change.tenant_id
        try:
            removed = await self._purge_entity(tenant_id, change.entity)

            if change.action in (ChangeAction.UPDATE, ChangeAction.DELETE):
                removed += await self.backend.delete(
                    self.keys.entity_key(tenant_id, change.entity, change.entity_id)
                )
                removed += await self.backend.delete_pattern(
                    self.keys.entity_variants_pattern(tenant_id, change.entity, change.entity_id)
                )

            for related in self.related_entities(change.entity):
                removed += await self._purge_entity(tenant_id, related)

            consultant_keys = await self.backend.pop_tag(self.keys.cross_tenant_tag(tenant_id))
            if consultant_keys:
                removed += await self.backend.delete(*consultant_keys)
        except CacheUnavailableError as e:
            raise InvalidationDeliveryError(
                f"Invalidation of {change.entity}:{change.entity_id} for tenant {tenant_id} failed: {e}"
            ) from e

        logger.debug(
            "Invalidated %d keys for %s %s:%s (tenant %s)",
            removed, change.action.value, change.entity, change.entity_id, tenant_id,
        )
        return removed
