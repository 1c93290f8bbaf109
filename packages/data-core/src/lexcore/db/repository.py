"""Tenant-scoped repositories.

One TenantRepository per entity model, constructed once at startup. Every
operation resolves the current tenant first, runs in a tenant transaction
(RLS bound before the first query) and filters on tenant_id in the
application as a second, independent layer.

Records are returned as plain dicts with encrypted fields decrypted.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Generic, Iterable, Mapping, TypeVar

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lexcore.crypto.cipher import FieldEncryptor, encrypted_fields
from lexcore.db.models import Base
from lexcore.db.rls import tenant_transaction
from lexcore.errors import InvalidationDeliveryError, NotFoundOrForbiddenError, TenantAccessDeniedError
from lexcore.events.bus import EventBus
from lexcore.events.envelope import ChangeAction, build_change_event
from lexcore.tenancy.context import TenantContextManager

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=Base)

# Set by the repository only, never taken from caller input.
_PROTECTED_FIELDS = frozenset({"id", "tenant_id", "created_at", "updated_at", "deleted_at", "key_id"})


class TenantRepository(Generic[ModelT]):
    def __init__(
        self,
        model: type[ModelT],
        session_factory: async_sessionmaker[AsyncSession],
        context: TenantContextManager,
        events: EventBus | None = None,
        encryptor: FieldEncryptor | None = None,
    ) -> None:
        self.model = model
        self.entity: str = model.__tablename__
        self.session_factory = session_factory
        self.context = context
        self.events = events
        self.encryptor = encryptor
        self._columns = tuple(c.key for c in model.__table__.columns)
        self._encrypted = encrypted_fields(model) if encryptor is not None else ()

    # ── helpers ─────────────────────────────────────────────────────────

    def _to_record(self, obj: ModelT) -> dict[str, Any]:
        return {name: getattr(obj, name) for name in self._columns}

    async def _open(self, session: AsyncSession, tenant_id: str, obj: ModelT) -> dict[str, Any]:
        record = self._to_record(obj)
        if self._encrypted:
            record = await self.encryptor.decrypt_values(session, tenant_id, self.model, record)
        return record

    def _writable(self, data: Mapping[str, Any], tenant_id: str) -> dict[str, Any]:
        supplied = data.get("tenant_id")
        if supplied is not None and supplied != tenant_id:
            logger.warning(
                "Ignoring caller-supplied tenant_id=%s on %s write for tenant %s",
                supplied, self.entity, tenant_id,
            )
        values = {k: v for k, v in data.items() if k not in _PROTECTED_FIELDS}
        unknown = set(values) - set(self._columns)
        if unknown:
            raise ValueError(f"Unknown fields for {self.entity}: {', '.join(sorted(unknown))}")
        return values

    async def _select_one(self, session: AsyncSession, tenant_id: str, entity_id: str, for_update: bool = False):
        stmt = (
            select(self.model)
            .where(
                self.model.id == entity_id,
                self.model.tenant_id == tenant_id,
                self.model.deleted_at.is_(None),
            )
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def _emit(self, tenant_id: str, entity_id: str, action: ChangeAction) -> None:
        if self.events is None:
            return
        try:
            await self.events.publish(build_change_event(tenant_id, self.entity, entity_id, action))
        except InvalidationDeliveryError as e:
            # The write is committed; the event waits in the DLQ for replay.
            logger.error("Change event for %s:%s not delivered: %s", self.entity, entity_id, e)

    # ── reads ───────────────────────────────────────────────────────────

    async def find_by_id(self, entity_id: str) -> dict[str, Any] | None:
        tenant_id = self.context.get_current_tenant()
        async with tenant_transaction(self.session_factory, tenant_id) as session:
            obj = await self._select_one(session, tenant_id, entity_id)
            if obj is None:
                return None
            return await self._open(session, tenant_id, obj)

    async def find_many(
        self,
        filter: Mapping[str, Any] | None = None,
        *,
        limit: int | None = None,
        offset: int = 0,
        include_deleted: bool = False,
    ) -> list[dict[str, Any]]:
        tenant_id = self.context.get_current_tenant()
        criteria = dict(filter or {})
        requested = criteria.pop("tenant_id", None)
        if requested is not None and requested != tenant_id:
            raise TenantAccessDeniedError(requested, "filter names a tenant other than the current one")

        stmt = select(self.model).where(self.model.tenant_id == tenant_id)
        if not include_deleted:
            stmt = stmt.where(self.model.deleted_at.is_(None))
        for name, value in criteria.items():
            if name not in self._columns:
                raise ValueError(f"Unknown filter field for {self.entity}: {name}")
            if name in self._encrypted:
                raise ValueError(f"Cannot filter on encrypted field {self.entity}.{name}")
            column = getattr(self.model, name)
            if isinstance(value, (list, tuple, set, frozenset)):
                stmt = stmt.where(column.in_(list(value)))
            elif value is None:
                stmt = stmt.where(column.is_(None))
            else:
                stmt = stmt.where(column == value)
        stmt = stmt.order_by(self.model.created_at, self.model.id).offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)

        async with tenant_transaction(self.session_factory, tenant_id) as session:
            result = await session.execute(stmt)
            return [await self._open(session, tenant_id, obj) for obj in result.scalars().all()]

    # ── writes ──────────────────────────────────────────────────────────

    async def create(self, data: Mapping[str, Any]) -> dict[str, Any]:
        tenant_id = self.context.get_current_tenant()
        values = self._writable(data, tenant_id)
        entity_id = str(uuid.uuid4())
        if self._encrypted:
            await self.encryptor.prepare(self.session_factory, tenant_id)

        async with tenant_transaction(self.session_factory, tenant_id) as session:
            if self._encrypted:
                values = await self.encryptor.encrypt_values(session, tenant_id, self.model, entity_id, values)
            obj = self.model(id=entity_id, tenant_id=tenant_id, **values)
            session.add(obj)
            await session.flush()
            record = await self._open(session, tenant_id, obj)

        await self._emit(tenant_id, entity_id, ChangeAction.CREATE)
        return record

    async def update(self, entity_id: str, data: Mapping[str, Any]) -> dict[str, Any]:
        tenant_id = self.context.get_current_tenant()
        values = self._writable(data, tenant_id)
        if not values:
            raise ValueError(f"No updatable fields supplied for {self.entity}")
        if self._encrypted:
            await self.encryptor.prepare(self.session_factory, tenant_id)

        async with tenant_transaction(self.session_factory, tenant_id) as session:
            if self._encrypted:
                # Re-seal every encrypted field so the row stays under one key.
                current = await self._select_one(session, tenant_id, entity_id, for_update=True)
                if current is None:
                    raise NotFoundOrForbiddenError(self.entity, entity_id)
                plain = await self._open(session, tenant_id, current)
                secrets = {f: values.get(f, plain[f]) for f in self._encrypted}
                values.update(
                    await self.encryptor.encrypt_values(session, tenant_id, self.model, entity_id, secrets)
                )
            values["updated_at"] = datetime.now(timezone.utc)
            result = await session.execute(
                update(self.model)
                .where(
                    self.model.id == entity_id,
                    self.model.tenant_id == tenant_id,
                    self.model.deleted_at.is_(None),
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise NotFoundOrForbiddenError(self.entity, entity_id)
            obj = await self._select_one(session, tenant_id, entity_id)
            record = await self._open(session, tenant_id, obj)

        await self._emit(tenant_id, entity_id, ChangeAction.UPDATE)
        return record

    async def delete(self, entity_id: str, *, hard: bool = False) -> None:
        tenant_id = self.context.get_current_tenant()
        async with tenant_transaction(self.session_factory, tenant_id) as session:
            if hard:
                stmt = delete(self.model).where(
                    self.model.id == entity_id,
                    self.model.tenant_id == tenant_id,
                )
            else:
                stmt = (
                    update(self.model)
                    .where(
                        self.model.id == entity_id,
                        self.model.tenant_id == tenant_id,
                        self.model.deleted_at.is_(None),
                    )
                    .values(deleted_at=datetime.now(timezone.utc))
                )
            result = await session.execute(stmt.execution_options(synchronize_session=False))
            if result.rowcount == 0:
                raise NotFoundOrForbiddenError(self.entity, entity_id)

        await self._emit(tenant_id, entity_id, ChangeAction.DELETE)


class ConsultantReader:
    """Cross-tenant reads for consultants: one scoped transaction per tenant."""

    def __init__(self, context: TenantContextManager) -> None:
        self.context = context

    async def find_many_across(
        self,
        repository: TenantRepository,
        tenant_ids: Iterable[str],
        filter: Mapping[str, Any] | None = None,
        **kwargs: Any,
    ) -> dict[str, list[dict[str, Any]]]:
        targets = list(dict.fromkeys(tenant_ids))
        denied = [t for t in targets if not self.context.can_access_tenant(t)]
        if denied:
            raise TenantAccessDeniedError(denied[0])
        results = await asyncio.gather(*(
            self.context.run_with_tenant(t, repository.find_many, filter, **kwargs) for t in targets
        ))
        return dict(zip(targets, results))


class ElevatedAccessRepository:
    """Audited platform-admin reads of a named tenant's rows."""

    def __init__(self, repository: TenantRepository) -> None:
        self.repository = repository
        self.context = repository.context

    async def find_by_id(self, tenant_id: str, entity_id: str, justification: str) -> dict[str, Any] | None:
        return await self.context.run_elevated(
            tenant_id, justification, self.repository.find_by_id, entity_id
        )

    async def find_many(
        self, tenant_id: str, justification: str, filter: Mapping[str, Any] | None = None, **kwargs: Any
    ) -> list[dict[str, Any]]:
        return await self.context.run_elevated(
            tenant_id, justification, self.repository.find_many, filter, **kwargs
        )
