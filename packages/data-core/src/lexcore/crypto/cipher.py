"""Field-level encryption with per-tenant data keys.

Ciphertexts are ``enc:v1:<urlsafe b64(nonce || AES-GCM output)>``. The
associated data binds each value to its tenant, table, row and column, so a
ciphertext copied into another row or tenant fails to decrypt.
"""

from __future__ import annotations

import base64
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lexcore.crypto.keys import KeyStore
from lexcore.errors import DecryptionError, KeyManagementError

CIPHERTEXT_PREFIX = "enc:v1:"
_NONCE_BYTES = 12


def field_aad(tenant_id: str, table: str, row_id: str, field: str) -> bytes:
    return f"{tenant_id}|{table}|{row_id}|{field}".encode()


class FieldCipher:
    @staticmethod
    def encrypt(dek: bytes, plaintext: str, aad: bytes) -> str:
        nonce = os.urandom(_NONCE_BYTES)
        sealed = AESGCM(dek).encrypt(nonce, plaintext.encode(), aad)
        return CIPHERTEXT_PREFIX + base64.urlsafe_b64encode(nonce + sealed).decode()

    @staticmethod
    def decrypt(dek: bytes, token: str, aad: bytes) -> str:
        if not token.startswith(CIPHERTEXT_PREFIX):
            raise DecryptionError("value is not a lexcore ciphertext")
        try:
            blob = base64.urlsafe_b64decode(token[len(CIPHERTEXT_PREFIX):])
            return AESGCM(dek).decrypt(blob[:_NONCE_BYTES], blob[_NONCE_BYTES:], aad).decode()
        except (InvalidTag, ValueError) as e:
            raise DecryptionError("ciphertext failed authentication") from e


def encrypted_fields(model: type) -> tuple[str, ...]:
    return tuple(getattr(model, "__encrypted_fields__", ()))


class FieldEncryptor:
    """Encrypts and decrypts the declared fields of a model's records."""

    def __init__(self, key_store: KeyStore) -> None:
        self.key_store = key_store

    async def prepare(self, session_factory: async_sessionmaker[AsyncSession], tenant_id: str) -> None:
        await self.key_store.ensure_primary(session_factory, tenant_id)

    async def encrypt_values(
        self,
        session: AsyncSession,
        tenant_id: str,
        model: type,
        row_id: str,
        values: dict[str, Any],
        key_id: str | None = None,
    ) -> dict[str, Any]:
        """Return ``values`` with every encrypted field sealed and ``key_id`` set.

        Uses the tenant's primary key unless ``key_id`` is given.
        """
        fields = encrypted_fields(model)
        if not fields:
            return values
        if key_id is None:
            primary = await self.key_store.get_primary(session, tenant_id)
            if primary is None:
                raise KeyManagementError(f"No primary key for tenant {tenant_id}")
            key_id = primary.id
        dek = await self.key_store.data_key(session, tenant_id, key_id)
        sealed = dict(values)
        table = model.__tablename__
        for field in fields:
            value = sealed.get(field)
            if value is not None:
                sealed[field] = FieldCipher.encrypt(dek, str(value), field_aad(tenant_id, table, row_id, field))
        sealed["key_id"] = key_id
        return sealed

    async def decrypt_values(
        self, session: AsyncSession, tenant_id: str, model: type, record: dict[str, Any]
    ) -> dict[str, Any]:
        fields = encrypted_fields(model)
        key_id = record.get("key_id")
        if not fields or key_id is None:
            return record
        dek = await self.key_store.data_key(session, tenant_id, key_id)
        opened = dict(record)
        table = model.__tablename__
        for field in fields:
            value = opened.get(field)
            if value is not None:
                opened[field] = FieldCipher.decrypt(dek, value, field_aad(tenant_id, table, record["id"], field))
        return opened
