"""Key-management service interface and a local AES-GCM implementation.

Data-encryption keys (DEKs) leave the KMS only in wrapped form for storage
and in plaintext for immediate use; the master key never leaves it.
"""

from __future__ import annotations

import base64
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from lexcore.config import CoreSettings
from lexcore.errors import KeyManagementError

logger = logging.getLogger(__name__)

_NONCE_BYTES = 12


@dataclass(frozen=True)
class DataKey:
    plaintext: bytes
    wrapped: str
    kms_key_ref: str

    def __repr__(self) -> str:
        return f"DataKey(kms_key_ref={self.kms_key_ref!r})"


class KeyManagementService(ABC):
    @abstractmethod
    async def generate_data_key(self, tenant_id: str) -> DataKey: ...

    @abstractmethod
    async def unwrap_data_key(self, tenant_id: str, wrapped: str, kms_key_ref: str) -> bytes: ...


class LocalKeyManagementService(KeyManagementService):
    """Wraps DEKs under a master key with the tenant bound as associated data."""

    def __init__(self, master_key: bytes, key_ref: str = "local:master:v1") -> None:
        if len(master_key) != 32:
            raise KeyManagementError("master key must be 32 bytes")
        self._master = AESGCM(master_key)
        self.key_ref = key_ref

    @classmethod
    def from_settings(cls, settings: CoreSettings) -> LocalKeyManagementService:
        if settings.kms_master_key is None:
            raise KeyManagementError("LEXCORE_KMS_MASTER_KEY is not configured")
        try:
            master = base64.urlsafe_b64decode(settings.kms_master_key.get_secret_value())
        except ValueError as e:
            raise KeyManagementError(f"Invalid master key encoding: {e}") from e
        return cls(master)

    @staticmethod
    def generate_master_key() -> str:
        return base64.urlsafe_b64encode(AESGCM.generate_key(bit_length=256)).decode()

    @staticmethod
    def _aad(tenant_id: str) -> bytes:
        return f"lexcore-dek:{tenant_id}".encode()

    async def generate_data_key(self, tenant_id: str) -> DataKey:
        dek = AESGCM.generate_key(bit_length=256)
        nonce = os.urandom(_NONCE_BYTES)
        sealed = self._master.encrypt(nonce, dek, self._aad(tenant_id))
        wrapped = base64.urlsafe_b64encode(nonce + sealed).decode()
        logger.debug("Generated data key for tenant %s", tenant_id)
        return DataKey(plaintext=dek, wrapped=wrapped, kms_key_ref=self.key_ref)

    async def unwrap_data_key(self, tenant_id: str, wrapped: str, kms_key_ref: str) -> bytes:
        if kms_key_ref != self.key_ref:
            raise KeyManagementError(f"Unknown master key reference {kms_key_ref}")
        try:
            blob = base64.urlsafe_b64decode(wrapped)
            return self._master.decrypt(blob[:_NONCE_BYTES], blob[_NONCE_BYTES:], self._aad(tenant_id))
        except (InvalidTag, ValueError) as e:
            raise KeyManagementError(f"Failed to unwrap data key for tenant {tenant_id}") from e
