"""Pytest configuration and fixtures"""

import os
import tempfile

import pytest

from waypoint.checkpoint_store import MemoryCheckpointStore, SQLiteCheckpointStore
from waypoint.database import SQLiteDatabase
from waypoint.event_registry import MemoryEventRegistry
from waypoint.job_store import MemoryJobStore, SQLiteJobStore


@pytest.fixture
def db_path():
    """A throwaway SQLite file, removed along with its WAL files afterwards."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as tmp:
        path = tmp.name

    yield path

    for suffix in ("", "-wal", "-shm"):
        if os.path.exists(path + suffix):
            os.remove(path + suffix)


@pytest.fixture
def database(db_path):
    database = SQLiteDatabase(db_path)
    yield database
    database.close()


@pytest.fixture
def event_registry():
    return MemoryEventRegistry()


@pytest.fixture
def sqlite_store(database, event_registry):
    job_store = SQLiteJobStore(database, event_registry=event_registry)
    job_store.init()
    return job_store


@pytest.fixture
def memory_store(event_registry):
    return MemoryJobStore(event_registry=event_registry)


@pytest.fixture(params=["memory", "sqlite"])
def job_store(request, event_registry):
    """Each test using this runs once against every job store backend."""

    if request.param == "memory":
        return MemoryJobStore(event_registry=event_registry)

    return request.getfixturevalue("sqlite_store")


@pytest.fixture(params=["memory", "sqlite"])
def checkpoint_store(request):
    if request.param == "memory":
        return MemoryCheckpointStore()

    store = SQLiteCheckpointStore(request.getfixturevalue("database"))
    store.init()
    return store

