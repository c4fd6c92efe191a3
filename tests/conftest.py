"""
Shared fixtures – in-memory database, registry and record store.
"""

from datetime import datetime, timedelta, timezone

import pytest

from medvault.catalog import FieldCatalog
from medvault.database import create_db_engine, init_schema
from medvault.rbac import register_party
from medvault.records import SqlRecordStore
from medvault.registry import ConsentRegistry


class FakeClock:
    """Deterministic, manually advanced UTC clock."""
    def __init__(self, start=None):
        self.now = start or datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def engine():
    eng = create_db_engine("sqlite://")
    init_schema(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(engine, clock):
    return ConsentRegistry(engine, catalog=FieldCatalog(), clock=clock)


@pytest.fixture
def record_store(engine):
    return SqlRecordStore(engine)


@pytest.fixture
def holder(engine):
    return register_party(engine, "Jane Doe", "patient", "key-holder")


@pytest.fixture
def requester(engine):
    return register_party(engine, "Dr. Sarah Johnson", "doctor", "key-doctor")
