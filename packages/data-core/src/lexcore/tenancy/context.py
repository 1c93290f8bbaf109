"""Task-scoped tenant context.

Each request (asyncio task) sees its own TenantContext through a ContextVar
owned by the manager. Tasks spawned from a request inherit a copy of the
context, so an override in one task never leaks into another.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from contextvars import ContextVar, Token
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Iterator, TypeVar

from lexcore.audit import AuditAction, AuditEntry, AuditSink
from lexcore.errors import ContextMissingError, TenantAccessDeniedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Role(Enum):
    USER = "user"
    CONSULTANT = "consultant"
    PLATFORM_ADMIN = "platform_admin"


@dataclass(frozen=True)
class TenantContext:
    tenant_id: str
    user_id: str
    role: Role = Role.USER
    accessible_tenant_ids: frozenset[str] = field(default_factory=frozenset)
    home_tenant_id: str = ""

    def __post_init__(self) -> None:
        if not self.home_tenant_id:
            object.__setattr__(self, "home_tenant_id", self.tenant_id)

    @property
    def is_consultant(self) -> bool:
        return self.role == Role.CONSULTANT

    @property
    def is_overridden(self) -> bool:
        return self.tenant_id != self.home_tenant_id


class TenantContextManager:
    """Holds the current request's tenant identity."""

    def __init__(self, audit: AuditSink | None = None) -> None:
        self._current: ContextVar[TenantContext | None] = ContextVar(
            f"lexcore_tenant_context_{id(self)}", default=None
        )
        self._audit = audit

    def set_context(
        self,
        tenant_id: str,
        user_id: str,
        role: Role = Role.USER,
        accessible_tenant_ids: Iterable[str] = (),
    ) -> Token:
        if not tenant_id:
            raise ValueError("tenant_id is required")
        ctx = TenantContext(
            tenant_id=tenant_id,
            user_id=user_id,
            role=role,
            accessible_tenant_ids=frozenset(accessible_tenant_ids),
        )
        return self._current.set(ctx)

    def reset(self, token: Token) -> None:
        self._current.reset(token)

    def clear(self) -> None:
        self._current.set(None)

    @contextmanager
    def scope(
        self,
        tenant_id: str,
        user_id: str,
        role: Role = Role.USER,
        accessible_tenant_ids: Iterable[str] = (),
    ) -> Iterator[TenantContext]:
        """Bind a context for the lifetime of a request."""
        token = self.set_context(tenant_id, user_id, role, accessible_tenant_ids)
        try:
            yield self.get_context()
        finally:
            self._current.reset(token)

    def get_context(self) -> TenantContext:
        ctx = self._current.get()
        if ctx is None:
            raise ContextMissingError()
        return ctx

    def get_current_tenant(self) -> str:
        return self.get_context().tenant_id

    def has_context(self) -> bool:
        return self._current.get() is not None

    def can_access_tenant(self, tenant_id: str) -> bool:
        ctx = self._current.get()
        if ctx is None:
            return False
        if tenant_id in (ctx.tenant_id, ctx.home_tenant_id):
            return True
        return ctx.is_consultant and tenant_id in ctx.accessible_tenant_ids

    async def run_with_tenant(
        self,
        tenant_id: str,
        fn: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """Run ``fn`` with the context switched to ``tenant_id``.

        The previous context is restored on every exit path, cancellation
        included.
        """
        ctx = self.get_context()
        if not self.can_access_tenant(tenant_id):
            logger.warning(
                "Denied tenant override user=%s home=%s target=%s",
                ctx.user_id, ctx.home_tenant_id, tenant_id,
            )
            raise TenantAccessDeniedError(tenant_id)

        if tenant_id != ctx.home_tenant_id and self._audit is not None:
            self._audit.log(AuditEntry(
                action=AuditAction.CROSS_TENANT_ACCESS,
                tenant_id=tenant_id,
                actor=f"user:{ctx.user_id}",
                resource=f"tenant:{tenant_id}",
                details={"home_tenant_id": ctx.home_tenant_id, "role": ctx.role.value},
            ))

        return await self._run_as(ctx, tenant_id, fn, *args, **kwargs)

    async def run_elevated(
        self,
        tenant_id: str,
        justification: str,
        fn: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """Platform-admin access to any tenant, always audited.

        Isolation still applies: the work runs as ``tenant_id`` and sees only
        that tenant's rows.
        """
        ctx = self.get_context()
        if ctx.role != Role.PLATFORM_ADMIN:
            raise TenantAccessDeniedError(tenant_id, "elevated access requires the platform admin role")
        if not justification or not justification.strip():
            raise ValueError("elevated access requires a justification")
        if self._audit is None:
            raise TenantAccessDeniedError(tenant_id, "elevated access requires an audit sink")

        logger.warning(
            "Elevated access user=%s target=%s justification=%r",
            ctx.user_id, tenant_id, justification,
        )
        self._audit.log(AuditEntry(
            action=AuditAction.ELEVATED_ACCESS,
            tenant_id=tenant_id,
            actor=f"user:{ctx.user_id}",
            resource=f"tenant:{tenant_id}",
            details={"home_tenant_id": ctx.home_tenant_id, "justification": justification},
        ))
        return await self._run_as(ctx, tenant_id, fn, *args, **kwargs)

    async def _run_as(
        self,
        ctx: TenantContext,
        tenant_id: str,
        fn: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        token = self._current.set(replace(ctx, tenant_id=tenant_id))
        try:
            return await fn(*args, **kwargs)
        finally:
            self._current.reset(token)
