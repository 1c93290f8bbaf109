"""Tests for TenantRepository — isolation, conditional writes, events, encryption."""

import pytest
from sqlalchemy import select

from lexcore.audit import AuditAction
from lexcore.crypto.cipher import CIPHERTEXT_PREFIX
from lexcore.db.models import Client, Matter
from lexcore.db.repository import ConsultantReader, ElevatedAccessRepository
from lexcore.errors import (
    ContextMissingError,
    DecryptionError,
    NotFoundOrForbiddenError,
    TenantAccessDeniedError,
)
from lexcore.events.envelope import ENTITY_CHANGED, ChangeAction, ChangeEvent
from lexcore.tenancy.context import Role


@pytest.fixture
def changes(bus):
    received = []

    async def collect(event):
        received.append(ChangeEvent.from_event(event))

    bus.subscribe(ENTITY_CHANGED, collect)
    return received


class TestCreate:
    async def test_stamps_current_tenant(self, context, matters):
        with context.scope("tenant-a", "u-1"):
            record = await matters.create({"title": "Estate of Doe", "tenant_id": "tenant-b", "id": "chosen"})
        assert record["tenant_id"] == "tenant-a"
        assert record["id"] != "chosen"
        assert record["status"] == "open"

    async def test_unknown_field_rejected(self, context, matters):
        with context.scope("tenant-a", "u-1"):
            with pytest.raises(ValueError):
                await matters.create({"title": "x", "no_such_column": 1})

    async def test_requires_context(self, matters):
        with pytest.raises(ContextMissingError):
            await matters.create({"title": "x"})

    async def test_emits_create_event(self, context, matters, changes):
        with context.scope("tenant-a", "u-1"):
            record = await matters.create({"title": "Acme v. Roe"})
        assert changes == [ChangeEvent("tenant-a", "matters", record["id"], ChangeAction.CREATE)]


class TestReads:
    async def test_rows_of_other_tenant_invisible(self, context, matters):
        with context.scope("tenant-a", "u-1"):
            created = await matters.create({"title": "A matter"})
        with context.scope("tenant-b", "u-2"):
            assert await matters.find_by_id(created["id"]) is None
            assert await matters.find_many() == []
        with context.scope("tenant-a", "u-1"):
            found = await matters.find_by_id(created["id"])
            assert found["title"] == "A matter"

    async def test_find_many_filters(self, context, matters):
        with context.scope("tenant-a", "u-1"):
            await matters.create({"title": "one", "status": "open"})
            await matters.create({"title": "two", "status": "closed"})
            await matters.create({"title": "three", "status": "open"})
            open_titles = [r["title"] for r in await matters.find_many({"status": "open"})]
            both = await matters.find_many({"status": ["open", "closed"]})
            page = await matters.find_many(limit=1, offset=1)
        assert open_titles == ["one", "three"]
        assert len(both) == 3
        assert [r["title"] for r in page] == ["two"]

    async def test_filter_naming_other_tenant_denied(self, context, matters):
        with context.scope("tenant-a", "u-1"):
            with pytest.raises(TenantAccessDeniedError):
                await matters.find_many({"tenant_id": "tenant-b"})
            assert await matters.find_many({"tenant_id": "tenant-a"}) == []

    async def test_unknown_filter_field_rejected(self, context, matters):
        with context.scope("tenant-a", "u-1"):
            with pytest.raises(ValueError):
                await matters.find_many({"bogus": 1})

    async def test_filter_on_encrypted_field_rejected(self, context, matters):
        with context.scope("tenant-a", "u-1"):
            with pytest.raises(ValueError):
                await matters.find_many({"notes": "secret"})


class TestUpdateDelete:
    async def test_update_own_row(self, context, matters, changes):
        with context.scope("tenant-a", "u-1"):
            created = await matters.create({"title": "Old title"})
            updated = await matters.update(created["id"], {"title": "New title", "tenant_id": "tenant-b"})
        assert updated["title"] == "New title"
        assert updated["tenant_id"] == "tenant-a"
        assert changes[-1].action == ChangeAction.UPDATE

    async def test_update_other_tenant_row_is_not_found(self, context, matters):
        with context.scope("tenant-a", "u-1"):
            created = await matters.create({"title": "A only"})
        with context.scope("tenant-b", "u-2"):
            with pytest.raises(NotFoundOrForbiddenError):
                await matters.update(created["id"], {"title": "hijacked"})
            with pytest.raises(NotFoundOrForbiddenError):
                await matters.delete(created["id"])
        with context.scope("tenant-a", "u-1"):
            assert (await matters.find_by_id(created["id"]))["title"] == "A only"

    async def test_missing_and_foreign_rows_indistinguishable(self, context, matters):
        with context.scope("tenant-a", "u-1"):
            created = await matters.create({"title": "A only"})
        with context.scope("tenant-b", "u-2"):
            with pytest.raises(NotFoundOrForbiddenError) as foreign:
                await matters.update(created["id"], {"title": "x"})
            with pytest.raises(NotFoundOrForbiddenError) as missing:
                await matters.update("00000000-0000-0000-0000-000000000000", {"title": "x"})
        assert str(foreign.value) == f"matters {created['id']} not found"
        assert str(missing.value) == "matters 00000000-0000-0000-0000-000000000000 not found"

    async def test_empty_update_rejected(self, context, matters):
        with context.scope("tenant-a", "u-1"):
            created = await matters.create({"title": "x"})
            with pytest.raises(ValueError):
                await matters.update(created["id"], {"id": "other"})

    async def test_soft_delete_hides_row(self, context, matters, changes):
        with context.scope("tenant-a", "u-1"):
            created = await matters.create({"title": "to delete"})
            await matters.delete(created["id"])
            assert await matters.find_by_id(created["id"]) is None
            assert await matters.find_many() == []
            kept = await matters.find_many(include_deleted=True)
            with pytest.raises(NotFoundOrForbiddenError):
                await matters.delete(created["id"])
        assert kept[0]["deleted_at"] is not None
        assert changes[-1] == ChangeEvent("tenant-a", "matters", created["id"], ChangeAction.DELETE)

    async def test_hard_delete_removes_row(self, context, matters, session_factory):
        with context.scope("tenant-a", "u-1"):
            created = await matters.create({"title": "gone"})
            await matters.delete(created["id"], hard=True)
        async with session_factory() as session:
            assert await session.get(Matter, created["id"]) is None


class TestEncryptionAtRest:
    async def test_notes_stored_encrypted(self, context, clients, session_factory):
        with context.scope("tenant-a", "u-1"):
            created = await clients.create({"name": "Jane Roe", "notes": "privileged"})
        assert created["notes"] == "privileged"

        async with session_factory() as session:
            row = await session.get(Client, created["id"])
        assert row.notes.startswith(CIPHERTEXT_PREFIX)
        assert "privileged" not in row.notes
        assert row.key_id == created["key_id"]

    async def test_update_reseals_under_primary_key(self, context, clients):
        with context.scope("tenant-a", "u-1"):
            created = await clients.create({"name": "Jane", "notes": "first"})
            updated = await clients.update(created["id"], {"name": "Jane Roe"})
        assert updated["notes"] == "first"
        assert updated["name"] == "Jane Roe"

    async def test_each_tenant_has_own_key(self, context, clients):
        with context.scope("tenant-a", "u-1"):
            a = await clients.create({"name": "A", "notes": "n"})
        with context.scope("tenant-b", "u-2"):
            b = await clients.create({"name": "B", "notes": "n"})
        assert a["key_id"] != b["key_id"]

    async def test_ciphertext_copied_to_other_tenant_fails(self, context, clients, session_factory):
        with context.scope("tenant-a", "u-1"):
            a = await clients.create({"name": "A", "notes": "secret"})
        with context.scope("tenant-b", "u-2"):
            b = await clients.create({"name": "B", "notes": "other"})
        async with session_factory() as session:
            async with session.begin():
                row_b = await session.get(Client, b["id"])
                row_b.notes = (await session.get(Client, a["id"])).notes
        with context.scope("tenant-b", "u-2"):
            with pytest.raises(DecryptionError):
                await clients.find_by_id(b["id"])


class TestConsultantReader:
    async def test_reads_each_accessible_tenant(self, context, matters, audit):
        for tenant in ("tenant-a", "tenant-b"):
            with context.scope(tenant, "u"):
                await matters.create({"title": f"{tenant} matter"})
        reader = ConsultantReader(context)
        with context.scope("tenant-a", "c-1", Role.CONSULTANT, ["tenant-b"]):
            results = await reader.find_many_across(matters, ["tenant-a", "tenant-b"])
            assert context.get_current_tenant() == "tenant-a"
        assert [r["title"] for r in results["tenant-a"]] == ["tenant-a matter"]
        assert [r["title"] for r in results["tenant-b"]] == ["tenant-b matter"]
        assert len(audit.by_action(AuditAction.CROSS_TENANT_ACCESS)) == 1

    async def test_unlisted_tenant_denied(self, context, matters):
        with context.scope("tenant-b", "u"):
            await matters.create({"title": "B only"})
        reader = ConsultantReader(context)
        with context.scope("tenant-c", "c-1", Role.CONSULTANT, ["tenant-a"]):
            with pytest.raises(TenantAccessDeniedError):
                await reader.find_many_across(matters, ["tenant-a", "tenant-b"])
            # Querying B directly under the consultant's own context yields nothing.
            assert await matters.find_many() == []


class TestElevatedAccess:
    async def test_admin_reads_target_tenant(self, context, matters, audit):
        with context.scope("tenant-a", "u"):
            created = await matters.create({"title": "A matter"})
        elevated = ElevatedAccessRepository(matters)
        with context.scope("platform", "admin-1", Role.PLATFORM_ADMIN):
            found = await elevated.find_by_id("tenant-a", created["id"], "ticket 881")
            listed = await elevated.find_many("tenant-a", "ticket 881")
        assert found["title"] == "A matter"
        assert len(listed) == 1
        assert len(audit.by_action(AuditAction.ELEVATED_ACCESS)) == 2

    async def test_elevated_read_stays_in_target_tenant(self, context, matters):
        with context.scope("tenant-a", "u"):
            created = await matters.create({"title": "A matter"})
        elevated = ElevatedAccessRepository(matters)
        with context.scope("platform", "admin-1", Role.PLATFORM_ADMIN):
            assert await elevated.find_by_id("tenant-b", created["id"], "ticket 881") is None

    async def test_regular_user_denied(self, context, matters):
        elevated = ElevatedAccessRepository(matters)
        with context.scope("tenant-a", "u"):
            with pytest.raises(TenantAccessDeniedError):
                await elevated.find_by_id("tenant-b", "x", "curious")


class TestRawIsolation:
    async def test_repository_never_returns_foreign_rows_even_if_seeded_directly(
        self, context, matters, session_factory
    ):
        async with session_factory() as session:
            async with session.begin():
                session.add(Matter(id="m-b", tenant_id="tenant-b", title="B's"))
        with context.scope("tenant-a", "u"):
            assert await matters.find_by_id("m-b") is None
        async with session_factory() as session:
            rows = (await session.execute(select(Matter.tenant_id))).scalars().all()
        assert rows == ["tenant-b"]
