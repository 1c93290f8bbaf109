"""Tenant context management for RLS enforcement.

Every database operation MUST:
1. Be inside an explicit transaction (BEGIN/COMMIT)
2. Call set_tenant_context() at the start of the transaction
3. Bind app.tenant_id transaction-locally (set_config(..., true))

PgBouncer: transaction pooling mode — the setting is scoped to the
transaction, so a pooled connection never carries it into another tenant's
work. A transaction serves exactly one tenant; consultant reads across N
tenants run as N transactions.

On non-PostgreSQL dialects (SQLite in unit tests) the session variable is
recorded on the session only; isolation there rests on the repository.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncSession, async_sessionmaker

from lexcore.errors import TenantScopeError

logger = logging.getLogger(__name__)

TENANT_SETTING = "app.tenant_id"
POLICY_NAME = "tenant_isolation"
_SESSION_TENANT_KEY = "lexcore.rls_tenant_id"


def _is_postgres(session: AsyncSession) -> bool:
    return session.bind is not None and session.bind.dialect.name == "postgresql"


def bound_tenant(session: AsyncSession) -> str | None:
    return session.info.get(_SESSION_TENANT_KEY)


async def set_tenant_context(session: AsyncSession, tenant_id: str) -> None:
    """Set tenant context for RLS enforcement within current transaction."""
    current = session.info.get(_SESSION_TENANT_KEY)
    if current is not None and current != tenant_id:
        raise TenantScopeError(
            f"Transaction already bound to tenant {current}; refusing to rebind to {tenant_id}"
        )
    if _is_postgres(session):
        await session.execute(
            text("SELECT set_config(:setting, :tenant_id, true)"),
            {"setting": TENANT_SETTING, "tenant_id": tenant_id},
        )
    session.info[_SESSION_TENANT_KEY] = tenant_id


@asynccontextmanager
async def tenant_transaction(
    session_factory: async_sessionmaker[AsyncSession], tenant_id: str
) -> AsyncIterator[AsyncSession]:
    """Open a fresh session and transaction bound to one tenant.

    The tenant setting is the first statement of the transaction. The
    session is discarded afterwards, never handed to another tenant.
    """
    async with session_factory() as session:
        try:
            async with session.begin():
                await set_tenant_context(session, tenant_id)
                yield session
        finally:
            session.info.pop(_SESSION_TENANT_KEY, None)


def policy_statements(table: str) -> list[str]:
    """DDL enforcing tenant isolation on ``table`` inside PostgreSQL."""
    predicate = f"tenant_id = current_setting('{TENANT_SETTING}', true)"
    return [
        f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY",
        f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY",
        f"DROP POLICY IF EXISTS {POLICY_NAME} ON {table}",
        f"CREATE POLICY {POLICY_NAME} ON {table} USING ({predicate}) WITH CHECK ({predicate})",
        f"DROP TRIGGER IF EXISTS {table}_tenant_immutable ON {table}",
        f"CREATE TRIGGER {table}_tenant_immutable BEFORE UPDATE OF tenant_id ON {table} "
        "FOR EACH ROW EXECUTE FUNCTION lexcore_reject_tenant_change()",
    ]


TENANT_IMMUTABLE_FUNCTION = """
CREATE OR REPLACE FUNCTION lexcore_reject_tenant_change() RETURNS trigger AS $$
BEGIN
    IF NEW.tenant_id IS DISTINCT FROM OLD.tenant_id THEN
        RAISE EXCEPTION 'tenant_id is immutable';
    END IF;
    RETURN NEW;
END;
$$ LANGUAGE plpgsql
"""

CHANGE_FEED_FUNCTION = """
CREATE OR REPLACE FUNCTION lexcore_notify_change() RETURNS trigger AS $$
DECLARE
    rec RECORD;
BEGIN
    IF TG_OP = 'DELETE' THEN
        rec := OLD;
    ELSE
        rec := NEW;
    END IF;
    PERFORM pg_notify(
        TG_ARGV[0],
        json_build_object(
            'tenant_id', rec.tenant_id,
            'entity', TG_TABLE_NAME,
            'id', rec.id,
            'action', CASE TG_OP WHEN 'INSERT' THEN 'create' ELSE lower(TG_OP) END
        )::text
    );
    RETURN rec;
END;
$$ LANGUAGE plpgsql
"""


def change_feed_statements(table: str, channel: str) -> list[str]:
    """Trigger publishing row changes on ``channel`` for out-of-band writes."""
    return [
        f"DROP TRIGGER IF EXISTS {table}_change_feed ON {table}",
        f"CREATE TRIGGER {table}_change_feed AFTER INSERT OR UPDATE OR DELETE ON {table} "
        f"FOR EACH ROW EXECUTE FUNCTION lexcore_notify_change('{channel}')",
    ]


async def install_policies(
    conn: AsyncConnection,
    tables: tuple[str, ...] | list[str],
    change_feed_tables: tuple[str, ...] | list[str] = (),
    channel: str = "lexcore_changes",
) -> None:
    """Install RLS policies (and optional change-feed triggers) on PostgreSQL."""
    if conn.dialect.name != "postgresql":
        logger.info("Skipping RLS policy install on dialect %s", conn.dialect.name)
        return
    await conn.execute(text(TENANT_IMMUTABLE_FUNCTION))
    for table in tables:
        for stmt in policy_statements(table):
            await conn.execute(text(stmt))
    if change_feed_tables:
        await conn.execute(text(CHANGE_FEED_FUNCTION))
        for table in change_feed_tables:
            for stmt in change_feed_statements(table, channel):
                await conn.execute(text(stmt))
    logger.info("Installed RLS policies on %d tables", len(tables))
