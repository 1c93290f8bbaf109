"""SQLAlchemy models for all tenant-scoped tables.

All tables have tenant_id as a required column for RLS enforcement.
FORCE RLS is applied on every table in TENANT_SCOPED_TABLES.

Entity tables share TenantScopedMixin. Tables with fields encrypted at rest
also carry key_id and list the fields in __encrypted_fields__.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import String, Text, Boolean, Integer, Float, DateTime, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class TenantScopedMixin:
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class EncryptedMixin:
    __encrypted_fields__: tuple[str, ...] = ()

    key_id: Mapped[str | None] = mapped_column(String(36), index=True)


class Client(TenantScopedMixin, EncryptedMixin, Base):
    __tablename__ = "clients"
    __encrypted_fields__ = ("notes",)

    name: Mapped[str] = mapped_column(String(256), nullable=False)
    email: Mapped[str | None] = mapped_column(String(256))
    notes: Mapped[str | None] = mapped_column(Text)


class Matter(TenantScopedMixin, EncryptedMixin, Base):
    __tablename__ = "matters"
    __encrypted_fields__ = ("notes",)

    client_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("clients.id"))
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="open")
    billing_rate: Mapped[float | None] = mapped_column(Float)
    notes: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (
        Index("ix_matters_tenant_status", "tenant_id", "status"),
    )


class TimeEntry(TenantScopedMixin, EncryptedMixin, Base):
    __tablename__ = "time_entries"
    __encrypted_fields__ = ("description",)

    matter_id: Mapped[str] = mapped_column(String(36), ForeignKey("matters.id"), nullable=False)
    hours: Mapped[float] = mapped_column(Float, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    billed: Mapped[bool] = mapped_column(Boolean, default=False)

    __table_args__ = (
        Index("ix_time_entries_tenant_matter", "tenant_id", "matter_id"),
    )


class EncryptionKeyRecord(Base):
    """Per-tenant data-encryption key, stored wrapped by the KMS."""
    __tablename__ = "encryption_keys"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="ACTIVE")
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    wrapped_key: Mapped[str] = mapped_column(Text, nullable=False)
    kms_key_ref: Mapped[str] = mapped_column(String(256), nullable=False)
    superseded_by: Mapped[str | None] = mapped_column(String(36))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    deprecated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    delete_after: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("tenant_id", "version", name="uq_encryption_keys_tenant_version"),
    )


class RotationProgressRecord(Base):
    """Resumable re-encryption progress, kept after completion for audit."""
    __tablename__ = "rotation_progress"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    old_key_id: Mapped[str] = mapped_column(String(36), nullable=False)
    new_key_id: Mapped[str] = mapped_column(String(36), nullable=False)
    cursors_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    rows_migrated: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="IN_PROGRESS")
    error: Mapped[str | None] = mapped_column(Text)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_rotation_progress_tenant_status", "tenant_id", "status"),
    )


class RotationLease(Base):
    """Per-tenant rotation lock that survives process restarts by expiring."""
    __tablename__ = "rotation_leases"

    tenant_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    owner: Mapped[str] = mapped_column(String(128), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


ENTITY_MODELS: tuple[type[Base], ...] = (Client, Matter, TimeEntry)

TENANT_SCOPED_TABLES: tuple[str, ...] = (
    "clients",
    "matters",
    "time_entries",
    "encryption_keys",
    "rotation_progress",
    "rotation_leases",
)
