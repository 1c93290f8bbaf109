"""Field encryption and per-tenant key rotation."""

from lexcore.crypto.cipher import FieldCipher, FieldEncryptor
from lexcore.crypto.keys import KeyStatus, KeyStore
from lexcore.crypto.kms import DataKey, KeyManagementService, LocalKeyManagementService
from lexcore.crypto.rotation import KeyRotationService, RotationResult, RotationState

__all__ = [
    "DataKey",
    "FieldCipher",
    "FieldEncryptor",
    "KeyManagementService",
    "KeyRotationService",
    "KeyStatus",
    "KeyStore",
    "LocalKeyManagementService",
    "RotationResult",
    "RotationState",
]
