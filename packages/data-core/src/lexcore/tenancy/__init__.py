"""Tenant context — task-scoped identity for every data access."""

from lexcore.tenancy.context import Role, TenantContext, TenantContextManager

__all__ = [
    "Role",
    "TenantContext",
    "TenantContextManager",
]
