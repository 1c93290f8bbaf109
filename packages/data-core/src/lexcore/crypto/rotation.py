"""Per-tenant data-encryption key rotation with resumable re-encryption.

State machine per tenant:

    IDLE → GENERATING_NEW_KEY → REENCRYPTING → DEPRECATING_OLD → IDLE
                                     └──────→ FAILED

Every batch commits on its own together with its cursor in
rotation_progress, so a crashed or failed rotation resumes where it stopped.
Rows are selected by ``key_id != new_key`` and updated conditionally on the
key they were read under, so a resumed or concurrent pass never re-encrypts
a row twice. Old keys stay valid for decryption until no row references
them; only then do they become DEPRECATED.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import socket
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Awaitable, Callable, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lexcore.audit import AuditAction, AuditEntry, AuditSink
from lexcore.config import CoreSettings
from lexcore.crypto.cipher import FieldEncryptor, encrypted_fields
from lexcore.crypto.keys import KeyStatus, KeyStore
from lexcore.db.models import ENTITY_MODELS, Base, EncryptionKeyRecord, RotationLease, RotationProgressRecord
from lexcore.db.rls import tenant_transaction
from lexcore.errors import KeyManagementError, RotationFailedError, RotationInProgressError

logger = logging.getLogger(__name__)

AlertHandler = Callable[[str, dict], Awaitable[None]]

_TRANSIENT_ERRORS = (OperationalError, KeyManagementError, OSError, asyncio.TimeoutError)


class RotationState(Enum):
    IDLE = "idle"
    GENERATING_NEW_KEY = "generating_new_key"
    REENCRYPTING = "reencrypting"
    DEPRECATING_OLD = "deprecating_old"
    FAILED = "failed"


VALID_TRANSITIONS: dict[RotationState, set[RotationState]] = {
    RotationState.IDLE: {RotationState.GENERATING_NEW_KEY, RotationState.REENCRYPTING},
    RotationState.GENERATING_NEW_KEY: {RotationState.REENCRYPTING, RotationState.IDLE},
    RotationState.REENCRYPTING: {RotationState.DEPRECATING_OLD, RotationState.FAILED},
    RotationState.DEPRECATING_OLD: {RotationState.IDLE},
    RotationState.FAILED: {RotationState.REENCRYPTING, RotationState.GENERATING_NEW_KEY},
}


class ProgressStatus(str, Enum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass
class RotationResult:
    tenant_id: str
    old_key_id: str | None
    new_key_id: str
    rows_migrated: int = 0
    resumed: bool = False


@dataclass
class _Plan:
    progress_id: str
    old_key_id: str
    new_key_id: str


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RotationLock:
    """Per-tenant lease in rotation_leases.

    A lease expires if its holder dies, so another process can resume the
    rotation from its persisted progress.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lease_seconds: int = 300,
        owner: str | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.lease_seconds = lease_seconds
        self.owner = owner or f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"

    def _expiry(self) -> datetime:
        return _utcnow() + timedelta(seconds=self.lease_seconds)

    async def acquire(self, tenant_id: str) -> bool:
        try:
            async with tenant_transaction(self.session_factory, tenant_id) as session:
                taken = await session.execute(
                    update(RotationLease)
                    .where(RotationLease.tenant_id == tenant_id, RotationLease.expires_at < _utcnow())
                    .values(owner=self.owner, expires_at=self._expiry())
                    .execution_options(synchronize_session=False)
                )
                if taken.rowcount:
                    return True
                held = await session.execute(select(RotationLease.owner).where(RotationLease.tenant_id == tenant_id))
                if held.scalar_one_or_none() is not None:
                    return False
                session.add(RotationLease(tenant_id=tenant_id, owner=self.owner, expires_at=self._expiry()))
                await session.flush()
            return True
        except IntegrityError:
            return False

    async def renew(self, tenant_id: str) -> bool:
        async with tenant_transaction(self.session_factory, tenant_id) as session:
            result = await session.execute(
                update(RotationLease)
                .where(RotationLease.tenant_id == tenant_id, RotationLease.owner == self.owner)
                .values(expires_at=self._expiry())
                .execution_options(synchronize_session=False)
            )
            return bool(result.rowcount)

    async def release(self, tenant_id: str) -> None:
        async with tenant_transaction(self.session_factory, tenant_id) as session:
            lease = await session.get(RotationLease, tenant_id)
            if lease is not None and lease.owner == self.owner:
                await session.delete(lease)


class KeyRotationService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        key_store: KeyStore,
        models: Sequence[type[Base]] = ENTITY_MODELS,
        audit: AuditSink | None = None,
        alert: AlertHandler | None = None,
        batch_size: int = 500,
        max_batch_retries: int = 3,
        retry_backoff_seconds: float = 0.5,
        lease_seconds: int = 300,
        key_retention_days: int = 30,
        max_sweeps: int = 3,
        lock: RotationLock | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.session_factory = session_factory
        self.key_store = key_store
        self.encryptor = FieldEncryptor(key_store)
        self.models = [m for m in models if encrypted_fields(m)]
        self.audit = audit
        self.alert = alert
        self.batch_size = batch_size
        self.max_batch_retries = max_batch_retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self.key_retention = timedelta(days=key_retention_days)
        self.max_sweeps = max_sweeps
        self.lock = lock or RotationLock(session_factory, lease_seconds)
        self._states: dict[str, RotationState] = {}
        self._active: set[str] = set()

    @classmethod
    def from_settings(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        key_store: KeyStore,
        settings: CoreSettings,
        **kwargs,
    ) -> KeyRotationService:
        return cls(
            session_factory,
            key_store,
            batch_size=settings.rotation_batch_size,
            max_batch_retries=settings.rotation_max_batch_retries,
            retry_backoff_seconds=settings.rotation_retry_backoff_seconds,
            lease_seconds=settings.rotation_lease_seconds,
            key_retention_days=settings.key_retention_days,
            **kwargs,
        )

    # ── state ───────────────────────────────────────────────────────────

    def state(self, tenant_id: str) -> RotationState:
        return self._states.get(tenant_id, RotationState.IDLE)

    def _transition(self, tenant_id: str, new_state: RotationState) -> None:
        current = self.state(tenant_id)
        if new_state not in VALID_TRANSITIONS[current]:
            raise ValueError(f"Invalid rotation transition: {current.value} -> {new_state.value}")
        self._states[tenant_id] = new_state
        logger.info("Rotation tenant=%s %s -> %s", tenant_id, current.value, new_state.value)

    def _audit(self, action: str, tenant_id: str, **details) -> None:
        if self.audit is not None:
            self.audit.log(AuditEntry(
                action=action,
                tenant_id=tenant_id,
                actor=f"service:key-rotation:{self.lock.owner}",
                resource=f"tenant:{tenant_id}:keys",
                details=details,
            ))

    async def get_progress(self, tenant_id: str) -> RotationProgressRecord | None:
        async with tenant_transaction(self.session_factory, tenant_id) as session:
            result = await session.execute(
                select(RotationProgressRecord)
                .where(RotationProgressRecord.tenant_id == tenant_id)
                .order_by(RotationProgressRecord.started_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    # ── entry point ─────────────────────────────────────────────────────

    async def rotate_key(self, tenant_id: str) -> RotationResult:
        """Rotate the tenant's data key, resuming an unfinished rotation if any."""
        if tenant_id in self._active:
            raise RotationInProgressError(tenant_id)
        self._active.add(tenant_id)
        try:
            if not await self.lock.acquire(tenant_id):
                raise RotationInProgressError(tenant_id)
            try:
                return await self._rotate(tenant_id)
            finally:
                await self.lock.release(tenant_id)
        finally:
            if self.state(tenant_id) not in (RotationState.IDLE, RotationState.FAILED):
                # Interrupted mid-run; persisted progress drives the next attempt.
                self._states[tenant_id] = RotationState.IDLE
            self._active.discard(tenant_id)

    async def _rotate(self, tenant_id: str) -> RotationResult:
        plan = await self._open_plan(tenant_id)
        resumed = plan is not None
        if plan is None:
            self._transition(tenant_id, RotationState.GENERATING_NEW_KEY)
            plan, first_key_id = await self._start(tenant_id)
            if plan is None:
                self._transition(tenant_id, RotationState.IDLE)
                return RotationResult(tenant_id=tenant_id, old_key_id=None, new_key_id=first_key_id)
            self._audit(AuditAction.ROTATION_STARTED, tenant_id, old_key_id=plan.old_key_id, new_key_id=plan.new_key_id)
        else:
            self._audit(AuditAction.ROTATION_RESUMED, tenant_id, old_key_id=plan.old_key_id, new_key_id=plan.new_key_id)
            logger.info("Resuming rotation for tenant %s (progress %s)", tenant_id, plan.progress_id)

        self._transition(tenant_id, RotationState.REENCRYPTING)
        try:
            migrated = await self._reencrypt_all(tenant_id, plan)
        except RotationInProgressError:
            raise
        except Exception as e:
            await self._fail(tenant_id, plan, e)
            raise RotationFailedError(tenant_id, str(e)) from e

        self._transition(tenant_id, RotationState.DEPRECATING_OLD)
        retired = await self._deprecate(tenant_id, plan)
        self._transition(tenant_id, RotationState.IDLE)
        self._audit(
            AuditAction.ROTATION_COMPLETED, tenant_id,
            new_key_id=plan.new_key_id, deprecated=retired, rows_migrated=migrated,
        )
        return RotationResult(
            tenant_id=tenant_id,
            old_key_id=plan.old_key_id,
            new_key_id=plan.new_key_id,
            rows_migrated=migrated,
            resumed=resumed,
        )

    # ── phases ──────────────────────────────────────────────────────────

    async def _open_plan(self, tenant_id: str) -> _Plan | None:
        async with tenant_transaction(self.session_factory, tenant_id) as session:
            result = await session.execute(
                select(RotationProgressRecord)
                .where(
                    RotationProgressRecord.tenant_id == tenant_id,
                    RotationProgressRecord.status.in_([ProgressStatus.IN_PROGRESS.value, ProgressStatus.FAILED.value]),
                )
                .order_by(RotationProgressRecord.started_at.desc())
                .limit(1)
            )
            progress = result.scalar_one_or_none()
            if progress is None:
                return None
            progress.status = ProgressStatus.IN_PROGRESS.value
            progress.error = None
            return _Plan(progress.id, progress.old_key_id, progress.new_key_id)

    async def _start(self, tenant_id: str) -> tuple[_Plan | None, str]:
        async with tenant_transaction(self.session_factory, tenant_id) as session:
            old = await self.key_store.get_primary(session, tenant_id)
            new = await self.key_store.create_key(session, tenant_id)
            if old is None:
                logger.info("Tenant %s had no key; created first key %s", tenant_id, new.id)
                return None, new.id
            old.superseded_by = new.id
            progress = RotationProgressRecord(
                id=str(uuid.uuid4()),
                tenant_id=tenant_id,
                old_key_id=old.id,
                new_key_id=new.id,
                cursors_json="{}",
                rows_migrated=0,
                status=ProgressStatus.IN_PROGRESS.value,
            )
            session.add(progress)
            return _Plan(progress.id, old.id, new.id), new.id

    async def _reencrypt_all(self, tenant_id: str, plan: _Plan) -> int:
        migrated = 0
        for sweep in range(self.max_sweeps):
            for model in self.models:
                migrated += await self._reencrypt_table(tenant_id, plan, model)
            remaining = await self._count_remaining(tenant_id, plan.new_key_id)
            if remaining == 0:
                return migrated
            # Rows written under the old key by transactions that began before
            # the rotation started can land behind a cursor; sweep again.
            logger.warning("Tenant %s has %d rows left after sweep %d", tenant_id, remaining, sweep + 1)
            await self._reset_cursors(tenant_id, plan)
        raise RuntimeError(f"rows still reference superseded keys after {self.max_sweeps} sweeps")

    async def _reencrypt_table(self, tenant_id: str, plan: _Plan, model: type[Base]) -> int:
        migrated = 0
        while True:
            attempt = 0
            while True:
                try:
                    done, moved = await self._run_batch(tenant_id, plan, model)
                    break
                except _TRANSIENT_ERRORS as e:
                    attempt += 1
                    if attempt > self.max_batch_retries:
                        raise
                    logger.warning(
                        "Rotation batch on %s for tenant %s failed (attempt %d): %s",
                        model.__tablename__, tenant_id, attempt, e,
                    )
                    await asyncio.sleep(self.retry_backoff_seconds * attempt)
            migrated += moved
            if not await self.lock.renew(tenant_id):
                raise RotationInProgressError(tenant_id)
            if done:
                return migrated

    async def _run_batch(self, tenant_id: str, plan: _Plan, model: type[Base]) -> tuple[bool, int]:
        table = model.__tablename__
        async with tenant_transaction(self.session_factory, tenant_id) as session:
            progress = await session.get(RotationProgressRecord, plan.progress_id)
            cursors = json.loads(progress.cursors_json or "{}")
            cursor = cursors.get(table, "")

            result = await session.execute(
                select(model)
                .where(
                    model.tenant_id == tenant_id,
                    model.key_id.is_not(None),
                    model.key_id != plan.new_key_id,
                    model.id > cursor,
                )
                .order_by(model.id)
                .limit(self.batch_size)
                .with_for_update()
            )
            rows = list(result.scalars().all())
            if not rows:
                return True, 0

            moved = 0
            for row in rows:
                values = await self._reencrypt_row(session, tenant_id, model, row, plan.new_key_id)
                outcome = await session.execute(
                    update(model)
                    .where(
                        model.id == row.id,
                        model.tenant_id == tenant_id,
                        model.key_id == row.key_id,
                    )
                    .values(**values, updated_at=row.updated_at)
                    .execution_options(synchronize_session=False)
                )
                moved += outcome.rowcount

            cursors[table] = rows[-1].id
            progress.cursors_json = json.dumps(cursors)
            progress.rows_migrated = (progress.rows_migrated or 0) + moved
            logger.debug("Re-encrypted %d rows of %s for tenant %s", moved, table, tenant_id)
            return len(rows) < self.batch_size, moved

    async def _reencrypt_row(
        self, session: AsyncSession, tenant_id: str, model: type[Base], row: Base, new_key_id: str
    ) -> dict:
        record = {c.key: getattr(row, c.key) for c in model.__table__.columns}
        plain = await self.encryptor.decrypt_values(session, tenant_id, model, record)
        secrets = {f: plain[f] for f in encrypted_fields(model)}
        return await self.encryptor.encrypt_values(session, tenant_id, model, row.id, secrets, key_id=new_key_id)

    async def _count_remaining(self, tenant_id: str, new_key_id: str) -> int:
        total = 0
        async with tenant_transaction(self.session_factory, tenant_id) as session:
            for model in self.models:
                result = await session.execute(
                    select(func.count()).select_from(model).where(
                        model.tenant_id == tenant_id,
                        model.key_id.is_not(None),
                        model.key_id != new_key_id,
                    )
                )
                total += result.scalar() or 0
        return total

    async def _reset_cursors(self, tenant_id: str, plan: _Plan) -> None:
        async with tenant_transaction(self.session_factory, tenant_id) as session:
            progress = await session.get(RotationProgressRecord, plan.progress_id)
            progress.cursors_json = "{}"

    async def _deprecate(self, tenant_id: str, plan: _Plan) -> list[str]:
        now = _utcnow()
        async with tenant_transaction(self.session_factory, tenant_id) as session:
            result = await session.execute(
                select(EncryptionKeyRecord).where(
                    EncryptionKeyRecord.tenant_id == tenant_id,
                    EncryptionKeyRecord.status == KeyStatus.ACTIVE.value,
                    EncryptionKeyRecord.id != plan.new_key_id,
                )
            )
            retired = []
            for key in result.scalars().all():
                key.status = KeyStatus.DEPRECATED.value
                key.superseded_by = key.superseded_by or plan.new_key_id
                key.deprecated_at = now
                key.delete_after = now + self.key_retention
                retired.append(key.id)

            progress = await session.get(RotationProgressRecord, plan.progress_id)
            progress.status = ProgressStatus.COMPLETED.value
            progress.completed_at = now
        for key_id in retired:
            self.key_store.forget(tenant_id, key_id)
        logger.info("Rotation complete for tenant %s; deprecated %s", tenant_id, retired)
        return retired

    async def _fail(self, tenant_id: str, plan: _Plan, error: BaseException) -> None:
        self._transition(tenant_id, RotationState.FAILED)
        async with tenant_transaction(self.session_factory, tenant_id) as session:
            progress = await session.get(RotationProgressRecord, plan.progress_id)
            progress.status = ProgressStatus.FAILED.value
            progress.error = str(error)[:2000]
        logger.critical(
            "Key rotation FAILED for tenant %s (old=%s new=%s): %s; both keys remain valid",
            tenant_id, plan.old_key_id, plan.new_key_id, error,
        )
        self._audit(AuditAction.ROTATION_FAILED, tenant_id, error=str(error), new_key_id=plan.new_key_id)
        if self.alert is not None:
            try:
                await self.alert("key_rotation_failed", {
                    "tenant_id": tenant_id,
                    "old_key_id": plan.old_key_id,
                    "new_key_id": plan.new_key_id,
                    "error": str(error),
                })
            except Exception:
                logger.exception("Alert delivery failed for tenant %s rotation failure", tenant_id)

    # ── retention ───────────────────────────────────────────────────────

    async def schedule_deletions(self, tenant_id: str, now: datetime | None = None) -> list[str]:
        """Move DEPRECATED keys past retention with no referencing rows to SCHEDULED_DELETION."""
        now = now or _utcnow()
        scheduled: list[str] = []
        async with tenant_transaction(self.session_factory, tenant_id) as session:
            result = await session.execute(
                select(EncryptionKeyRecord).where(
                    EncryptionKeyRecord.tenant_id == tenant_id,
                    EncryptionKeyRecord.status == KeyStatus.DEPRECATED.value,
                    EncryptionKeyRecord.delete_after <= now,
                )
            )
            for key in result.scalars().all():
                references = 0
                for model in self.models:
                    count = await session.execute(
                        select(func.count()).select_from(model).where(
                            model.tenant_id == tenant_id, model.key_id == key.id
                        )
                    )
                    references += count.scalar() or 0
                if references:
                    logger.warning("Key %s still referenced by %d rows; not scheduling deletion", key.id, references)
                    continue
                key.status = KeyStatus.SCHEDULED_DELETION.value
                scheduled.append(key.id)
        for key_id in scheduled:
            self.key_store.forget(tenant_id, key_id)
            self._audit(AuditAction.KEY_SCHEDULED_DELETION, tenant_id, key_id=key_id)
        return scheduled
