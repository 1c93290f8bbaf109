"""Per-tenant encryption key store.

A tenant's *primary* key is its ACTIVE key with no successor; new data is
always written under it. During a rotation the previous key stays ACTIVE
with ``superseded_by`` set, so both remain valid for decryption until every
row has moved to the new key.

All queries run inside the caller's tenant transaction.
"""

from __future__ import annotations

import logging
import uuid
from collections import OrderedDict
from enum import Enum

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lexcore.crypto.kms import KeyManagementService
from lexcore.db.models import EncryptionKeyRecord
from lexcore.db.rls import tenant_transaction
from lexcore.errors import DecryptionError, KeyManagementError

logger = logging.getLogger(__name__)


class KeyStatus(str, Enum):
    ACTIVE = "ACTIVE"
    DEPRECATED = "DEPRECATED"
    SCHEDULED_DELETION = "SCHEDULED_DELETION"


class KeyStore:
    def __init__(self, kms: KeyManagementService, max_cached_keys: int = 256) -> None:
        self.kms = kms
        self._max_cached = max_cached_keys
        self._plaintext: OrderedDict[tuple[str, str], bytes] = OrderedDict()

    def _remember(self, tenant_id: str, key_id: str, plaintext: bytes) -> None:
        self._plaintext[(tenant_id, key_id)] = plaintext
        self._plaintext.move_to_end((tenant_id, key_id))
        while len(self._plaintext) > self._max_cached:
            self._plaintext.popitem(last=False)

    async def get_primary(self, session: AsyncSession, tenant_id: str) -> EncryptionKeyRecord | None:
        result = await session.execute(
            select(EncryptionKeyRecord)
            .where(
                EncryptionKeyRecord.tenant_id == tenant_id,
                EncryptionKeyRecord.status == KeyStatus.ACTIVE.value,
                EncryptionKeyRecord.superseded_by.is_(None),
            )
            .order_by(EncryptionKeyRecord.version.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get(self, session: AsyncSession, tenant_id: str, key_id: str) -> EncryptionKeyRecord | None:
        result = await session.execute(
            select(EncryptionKeyRecord).where(
                EncryptionKeyRecord.tenant_id == tenant_id,
                EncryptionKeyRecord.id == key_id,
            )
        )
        return result.scalar_one_or_none()

    async def list_keys(self, session: AsyncSession, tenant_id: str) -> list[EncryptionKeyRecord]:
        result = await session.execute(
            select(EncryptionKeyRecord)
            .where(EncryptionKeyRecord.tenant_id == tenant_id)
            .order_by(EncryptionKeyRecord.version)
        )
        return list(result.scalars().all())

    async def create_key(self, session: AsyncSession, tenant_id: str) -> EncryptionKeyRecord:
        """Generate a DEK through the KMS and store it as the newest version."""
        current = await session.execute(
            select(func.max(EncryptionKeyRecord.version)).where(EncryptionKeyRecord.tenant_id == tenant_id)
        )
        version = (current.scalar() or 0) + 1
        data_key = await self.kms.generate_data_key(tenant_id)
        record = EncryptionKeyRecord(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            status=KeyStatus.ACTIVE.value,
            version=version,
            wrapped_key=data_key.wrapped,
            kms_key_ref=data_key.kms_key_ref,
        )
        session.add(record)
        await session.flush()
        self._remember(tenant_id, record.id, data_key.plaintext)
        logger.info("Created encryption key v%d for tenant %s", version, tenant_id)
        return record

    async def ensure_primary(
        self, session_factory: async_sessionmaker[AsyncSession], tenant_id: str
    ) -> str:
        """Return the tenant's primary key id, creating the first key if needed."""
        for _ in range(2):
            try:
                async with tenant_transaction(session_factory, tenant_id) as session:
                    primary = await self.get_primary(session, tenant_id)
                    if primary is None:
                        primary = await self.create_key(session, tenant_id)
                    return primary.id
            except IntegrityError:
                # Another writer created the first key concurrently.
                logger.debug("Concurrent first-key creation for tenant %s", tenant_id)
        async with tenant_transaction(session_factory, tenant_id) as session:
            primary = await self.get_primary(session, tenant_id)
            if primary is None:
                raise KeyManagementError(f"No primary key available for tenant {tenant_id}")
            return primary.id

    async def data_key(self, session: AsyncSession, tenant_id: str, key_id: str) -> bytes:
        cached = self._plaintext.get((tenant_id, key_id))
        if cached is not None:
            self._plaintext.move_to_end((tenant_id, key_id))
            return cached
        record = await self.get(session, tenant_id, key_id)
        if record is None:
            raise DecryptionError(f"Encryption key {key_id} not available for tenant {tenant_id}")
        plaintext = await self.kms.unwrap_data_key(tenant_id, record.wrapped_key, record.kms_key_ref)
        self._remember(tenant_id, key_id, plaintext)
        return plaintext

    def forget(self, tenant_id: str, key_id: str) -> None:
        self._plaintext.pop((tenant_id, key_id), None)

    def is_cached(self, tenant_id: str, key_id: str) -> bool:
        return (tenant_id, key_id) in self._plaintext
