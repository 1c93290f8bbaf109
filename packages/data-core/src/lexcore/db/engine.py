"""Database engine creation and session management."""

from __future__ import annotations

from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker

from lexcore.config import CoreSettings
from lexcore.db.models import Base, ENTITY_MODELS, TENANT_SCOPED_TABLES
from lexcore.db.rls import install_policies


def create_engine(url: str, **kwargs) -> AsyncEngine:
    """Create async SQLAlchemy engine."""
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=kwargs.get("echo", False))
    return create_async_engine(
        url,
        echo=kwargs.get("echo", False),
        pool_size=kwargs.get("pool_size", 10),
        max_overflow=kwargs.get("max_overflow", 5),
        pool_pre_ping=True,
    )


def create_engine_from_settings(settings: CoreSettings) -> AsyncEngine:
    return create_engine(
        settings.database_url,
        echo=settings.database_echo,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )


def get_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create session factory bound to engine."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_schema(engine: AsyncEngine, change_channel: str | None = None) -> None:
    """Create tables and, on PostgreSQL, the isolation policies."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        feed_tables = [m.__tablename__ for m in ENTITY_MODELS] if change_channel else []
        await install_policies(
            conn,
            TENANT_SCOPED_TABLES,
            change_feed_tables=feed_tables,
            channel=change_channel or "lexcore_changes",
        )
