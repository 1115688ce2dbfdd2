"""Shared fixtures for progress engine tests."""

import pytest

from progress_backend import config
from progress_backend.storage import InMemoryDB, ensure_indexes
from tests.helpers import YieldingDB


@pytest.fixture
async def db():
    """Fresh in-memory store with the production unique indexes."""
    database = InMemoryDB()
    await ensure_indexes(database)
    return database


@pytest.fixture(autouse=True)
def default_engine_config(monkeypatch):
    """Pin the tunables tests depend on, whatever the local .env says."""
    monkeypatch.setattr(config, "DEFAULT_TIME_ZONE", "UTC")
    monkeypatch.setattr(config, "REWARD_MILESTONE_STEP", 500)
    monkeypatch.setattr(config, "FINALIZATION_INTERVAL_MINUTES", 5)


@pytest.fixture
async def contended_db():
    """Store whose writes suspend mid-statement, for interleaving tests."""
    database = YieldingDB()
    await ensure_indexes(database)
    return database
