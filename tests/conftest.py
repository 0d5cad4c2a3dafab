"""
Pytest configuration for all tests.
Points the default store at a throwaway directory and gives each test its own
in-memory database.
"""

import os
import tempfile

os.environ.setdefault("EHR_DATA_DIR", tempfile.mkdtemp(prefix="ehr-ledger-"))
os.environ.setdefault("EHR_DB_URL", "sqlite://")

import pytest

from db import init_schema, make_engine, make_session_factory
from facade import AccessFacade
from models import Role


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    init_schema(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def facade(session_factory):
    return AccessFacade(session_factory, retry_backoff=0)


@pytest.fixture
def p1_d1(facade):
    """Scenario setup: patient p1 and doctor d1 registered, no grant yet."""
    facade.register("p1", "John Doe", Role.PATIENT)
    facade.register("d1", "Dr. Smith", Role.DOCTOR)
    return facade


@pytest.fixture
def granted(p1_d1):
    p1_d1.grant("p1", "d1")
    return p1_d1
