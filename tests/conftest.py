from __future__ import annotations

from pathlib import Path

import pytest

from autocoder_tracker.db.persistence import JsonFileStore
from autocoder_tracker.services.notification_bus import NotificationBus
from autocoder_tracker.services.reconciler import ReconciliationLoop
from autocoder_tracker.services.work_item_store import WorkItemStore
from fakes import REPO, FakeClock, FakeVcs, MemoryPersistence


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def persistence() -> MemoryPersistence:
    return MemoryPersistence()


@pytest.fixture
def store(persistence: MemoryPersistence, clock: FakeClock) -> WorkItemStore:
    return WorkItemStore(persistence, clock=clock)


@pytest.fixture
async def json_store(tmp_path: Path) -> JsonFileStore:
    backend = JsonFileStore(tmp_path / "requests.json")
    await backend.initialize()
    return backend


@pytest.fixture
def notification_bus() -> NotificationBus:
    return NotificationBus()


@pytest.fixture
def vcs() -> FakeVcs:
    return FakeVcs()


@pytest.fixture
def reconciler(store: WorkItemStore, vcs: FakeVcs) -> ReconciliationLoop:
    return ReconciliationLoop(store, vcs, interval_seconds=3600)  # never ticks in tests


@pytest.fixture
def make_processing(store: WorkItemStore):
    """Create a work item and claim it, returning its id."""

    async def _make(task: str, repository: str = REPO) -> str:
        item_id = await store.create(task, repository=repository)
        assert await store.update_status(item_id, "processing")
        return item_id

    return _make
