"""
Pytest fixtures and test configuration for possync tests.
"""

import pytest

from possync.config import SyncSettings
from possync.connectivity import ConnectivityMonitor
from possync.engine import SyncEngine
from possync.mutation import MutationLock
from possync.orchestrator import SyncOrchestrator
from possync.refresh import EntityRefresher
from possync.storage import LocalStore, SQLiteDatabase, SyncQueue
from possync.testing import FakeRemote, ManualScheduler


@pytest.fixture
def temp_db(tmp_path):
    """Create a temporary database path."""
    return tmp_path / "offline.db"


@pytest.fixture
def db(temp_db):
    return SQLiteDatabase(temp_db)


@pytest.fixture
def store(db):
    return LocalStore(db)


@pytest.fixture
def queue(db):
    return SyncQueue(db)


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def connectivity():
    """Monitor that starts online, with no probe."""
    return ConnectivityMonitor(initial=True)


@pytest.fixture
def settings(temp_db):
    return SyncSettings(_env_file=None, db_path=temp_db)


@pytest.fixture
def orchestrator(store, queue, remote, connectivity, scheduler):
    return SyncOrchestrator(store, queue, remote, connectivity, scheduler)


@pytest.fixture
def refresher(store, queue, remote, connectivity):
    return EntityRefresher(store, queue, remote, connectivity)


@pytest.fixture
def lock(scheduler):
    return MutationLock(2.0, scheduler)


@pytest.fixture
def engine(store, queue, remote, connectivity, scheduler, settings):
    return SyncEngine(store, queue, remote, connectivity, scheduler, settings)
