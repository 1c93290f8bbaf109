"""Shared fixtures: file-backed SQLite schema, tenant context, key store."""

import pytest

from lexcore.audit import AuditLogger
from lexcore.crypto.cipher import FieldEncryptor
from lexcore.crypto.keys import KeyStore
from lexcore.crypto.kms import LocalKeyManagementService
from lexcore.db.engine import create_engine, get_session_factory, init_schema
from lexcore.db.models import Client, Matter, TimeEntry
from lexcore.db.repository import TenantRepository
from lexcore.events.bus import InMemoryEventBus
from lexcore.tenancy.context import TenantContextManager


@pytest.fixture
async def db_engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path}/lexcore.db")
    await init_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return get_session_factory(db_engine)


@pytest.fixture
def audit():
    return AuditLogger()


@pytest.fixture
def context(audit):
    return TenantContextManager(audit=audit)


@pytest.fixture
def kms():
    return LocalKeyManagementService(b"\x01" * 32)


@pytest.fixture
def key_store(kms):
    return KeyStore(kms)


@pytest.fixture
def encryptor(key_store):
    return FieldEncryptor(key_store)


@pytest.fixture
def bus():
    return InMemoryEventBus(max_retries=3)


@pytest.fixture
def clients(session_factory, context, bus, encryptor):
    return TenantRepository(Client, session_factory, context, events=bus, encryptor=encryptor)


@pytest.fixture
def matters(session_factory, context, bus, encryptor):
    return TenantRepository(Matter, session_factory, context, events=bus, encryptor=encryptor)


@pytest.fixture
def time_entries(session_factory, context, bus, encryptor):
    return TenantRepository(TimeEntry, session_factory, context, events=bus, encryptor=encryptor)
