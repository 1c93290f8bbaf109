"""Error taxonomy for the data-access core.

Isolation faults surface to the caller as access / not-found errors.
Cache faults are absorbed by the cache layer. Rotation faults are reported
but leave every key usable for decryption.
"""

from __future__ import annotations


class LexCoreError(Exception):
    pass


class ContextMissingError(LexCoreError):
    """No tenant context is bound to the current task."""

    def __init__(self, message: str = "No tenant context bound to the current task") -> None:
        super().__init__(message)


class NotFoundOrForbiddenError(LexCoreError):
    """Row does not exist or belongs to another tenant.

    Both cases produce the same message.
    """

    def __init__(self, entity: str, entity_id: str) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class TenantAccessDeniedError(LexCoreError):
    def __init__(self, tenant_id: str, reason: str = "tenant not accessible from current context") -> None:
        self.tenant_id = tenant_id
        super().__init__(f"Access to tenant {tenant_id} denied: {reason}")


class TenantScopeError(LexCoreError):
    """A transaction was asked to serve a second tenant."""


class CacheUnavailableError(LexCoreError):
    pass


class InvalidationDeliveryError(LexCoreError):
    pass


class KeyManagementError(LexCoreError):
    pass


class DecryptionError(LexCoreError):
    pass


class RotationInProgressError(LexCoreError):
    def __init__(self, tenant_id: str) -> None:
        self.tenant_id = tenant_id
        super().__init__(f"Key rotation already in progress for tenant {tenant_id}")


class RotationFailedError(LexCoreError):
    def __init__(self, tenant_id: str, reason: str) -> None:
        self.tenant_id = tenant_id
        self.reason = reason
        super().__init__(f"Key rotation failed for tenant {tenant_id}: {reason}")
