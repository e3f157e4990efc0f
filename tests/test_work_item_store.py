from __future__ import annotations

import itertools
import logging

import pytest

from autocoder_tracker.errors import ValidationError
from autocoder_tracker.models.work_item import WorkItem, WorkItemStatus
from autocoder_tracker.services.work_item_store import WorkItemStore
from fakes import FakeClock, MemoryPersistence

ALLOWED = {
    (WorkItemStatus.PENDING, WorkItemStatus.PROCESSING),
    (WorkItemStatus.PROCESSING, WorkItemStatus.PROCESSING),
    (WorkItemStatus.PROCESSING, WorkItemStatus.COMPLETED),
    (WorkItemStatus.PROCESSING, WorkItemStatus.FAILED),
}


class _Opaque:
    """A value with no JSON form."""


async def _item_in(store: WorkItemStore, status: WorkItemStatus) -> str:
    item_id = await store.create("Add X", repository="acme/widgets")
    if status is WorkItemStatus.PENDING:
        return item_id
    assert await store.update_status(item_id, WorkItemStatus.PROCESSING)
    if status is not WorkItemStatus.PROCESSING:
        assert await store.update_status(item_id, status)
    return item_id


@pytest.mark.asyncio
class TestCreate:
    async def test_create_and_get(self, store: WorkItemStore) -> None:
        item_id = await store.create(
            "Add login page", language="python", repository="acme/web", priority="high"
        )
        assert item_id.startswith("req_")

        item = store.get(item_id)
        assert item is not None
        assert item.status == WorkItemStatus.PENDING
        assert item.created_at == item.updated_at
        assert item.task == "Add login page"
        assert item.priority.value == "high"
        assert item.branch_name is None
        assert item.pr_url is None

    async def test_defaults_and_trimming(self, store: WorkItemStore) -> None:
        item_id = await store.create("  Fix bug  ")
        item = store.get(item_id)
        assert item is not None
        assert item.task == "Fix bug"
        assert item.language == "auto-detect"
        assert item.priority.value == "medium"
        assert item.requester == "web-user"

    @pytest.mark.parametrize("task", ["", "   ", "\n\t"])
    async def test_blank_task_rejected(
        self, store: WorkItemStore, persistence: MemoryPersistence, task: str
    ) -> None:
        received = []
        store.subscribe(lambda item_id, item: received.append(item_id))

        with pytest.raises(ValidationError):
            await store.create(task)

        assert len(store) == 0
        assert persistence.saved == []
        assert received == []

    async def test_unknown_priority_rejected(self, store: WorkItemStore) -> None:
        with pytest.raises(ValidationError):
            await store.create("Add X", priority="urgent")
        assert len(store) == 0

    async def test_ids_are_unique(self, store: WorkItemStore) -> None:
        ids = {await store.create(f"Task {n}") for n in range(200)}
        assert len(ids) == 200

    async def test_get_unknown_returns_none(self, store: WorkItemStore) -> None:
        assert store.get("req_missing") is None

    async def test_get_returns_a_copy(self, store: WorkItemStore) -> None:
        item_id = await store.create("Add X")
        item = store.get(item_id)
        assert item is not None
        item.metadata["tampered"] = True
        item.status = WorkItemStatus.FAILED

        fresh = store.get(item_id)
        assert fresh is not None
        assert fresh.metadata == {}
        assert fresh.status == WorkItemStatus.PENDING


@pytest.mark.asyncio
class TestUpdateStatus:
    @pytest.mark.parametrize(
        "current,target", list(itertools.product(WorkItemStatus, WorkItemStatus))
    )
    async def test_transition_table(
        self, store: WorkItemStore, current: WorkItemStatus, target: WorkItemStatus
    ) -> None:
        item_id = await _item_in(store, current)

        ok = await store.update_status(item_id, target)

        item = store.get(item_id)
        assert item is not None
        if (current, target) in ALLOWED:
            assert ok is True
            assert item.status == target
        else:
            assert ok is False
            assert item.status == current

    async def test_unknown_id(self, store: WorkItemStore) -> None:
        assert await store.update_status("req_missing", "processing") is False

    async def test_unstorable_metadata_rejected(self, store: WorkItemStore) -> None:
        item_id = await _item_in(store, WorkItemStatus.PROCESSING)

        with pytest.raises(ValidationError):
            await store.update_status(item_id, "failed", {"error": _Opaque()})

        item = store.get(item_id)
        assert item is not None
        assert item.status == WorkItemStatus.PROCESSING
        assert item.metadata == {}

    async def test_metadata_is_merged(self, store: WorkItemStore) -> None:
        item_id = await _item_in(store, WorkItemStatus.PROCESSING)
        await store.update_status(item_id, "processing", {"errorCount": 1, "lastError": "boom"})
        await store.update_status(item_id, "processing", {"errorCount": 2})

        item = store.get(item_id)
        assert item is not None
        assert item.metadata == {"errorCount": 2, "lastError": "boom"}

    async def test_updated_at_advances(self, store: WorkItemStore, clock: FakeClock) -> None:
        item_id = await store.create("Add X")
        clock.advance(seconds=5)
        await store.update_status(item_id, "processing")

        item = store.get(item_id)
        assert item is not None
        assert (item.updated_at - item.created_at).total_seconds() == 5

    async def test_updated_at_never_goes_backwards(
        self, store: WorkItemStore, clock: FakeClock
    ) -> None:
        item_id = await store.create("Add X")
        clock.advance(hours=-1)
        await store.update_status(item_id, "processing")

        item = store.get(item_id)
        assert item is not None
        assert item.updated_at == item.created_at

    async def test_rejected_transition_does_not_persist(
        self, store: WorkItemStore, persistence: MemoryPersistence
    ) -> None:
        item_id = await store.create("Add X")
        saves = len(persistence.saved)
        assert await store.update_status(item_id, "completed") is False
        assert len(persistence.saved) == saves


@pytest.mark.asyncio
class TestUpdateBranch:
    async def test_first_writer_wins(self, store: WorkItemStore) -> None:
        item_id = await _item_in(store, WorkItemStatus.PROCESSING)

        assert await store.update_branch(item_id, "auto-1-add-x") is True
        assert await store.update_branch(item_id, "auto-2-add-x") is False
        assert await store.update_branch(item_id, "auto-1-add-x") is False

        item = store.get(item_id)
        assert item is not None
        assert item.branch_name == "auto-1-add-x"

    async def test_unknown_id(self, store: WorkItemStore) -> None:
        assert await store.update_branch("req_missing", "auto-1-x") is False

    @pytest.mark.parametrize("status", [WorkItemStatus.COMPLETED, WorkItemStatus.FAILED])
    async def test_terminal_items_are_frozen(
        self, store: WorkItemStore, status: WorkItemStatus
    ) -> None:
        item_id = await _item_in(store, status)
        assert await store.update_branch(item_id, "auto-1-add-x") is False
        item = store.get(item_id)
        assert item is not None
        assert item.branch_name is None


@pytest.mark.asyncio
class TestUpdatePR:
    async def test_completes_with_processing_time(
        self, store: WorkItemStore, clock: FakeClock
    ) -> None:
        item_id = await _item_in(store, WorkItemStatus.PROCESSING)
        clock.advance(seconds=42.4)
        report = [{"file": "a.py", "line": 3, "severity": "warning", "message": "unused"}]

        ok = await store.update_pr(item_id, "https://github.com/acme/widgets/pull/7", report)

        assert ok is True
        item = store.get(item_id)
        assert item is not None
        assert item.status == WorkItemStatus.COMPLETED
        assert item.pr_url == "https://github.com/acme/widgets/pull/7"
        assert item.bug_report == report
        assert item.metadata["processingTime"] == 42
        elapsed = (item.updated_at - item.created_at).total_seconds()
        assert abs(item.metadata["processingTime"] - elapsed) <= 0.5

    async def test_second_completion_is_noop(self, store: WorkItemStore) -> None:
        item_id = await _item_in(store, WorkItemStatus.PROCESSING)
        assert await store.update_pr(item_id, "https://github.com/acme/widgets/pull/1")
        assert await store.update_pr(item_id, "https://github.com/acme/widgets/pull/2") is False

        item = store.get(item_id)
        assert item is not None
        assert item.pr_url == "https://github.com/acme/widgets/pull/1"

    @pytest.mark.parametrize("status", [WorkItemStatus.PENDING, WorkItemStatus.FAILED])
    async def test_requires_processing(
        self, store: WorkItemStore, status: WorkItemStatus
    ) -> None:
        item_id = await _item_in(store, status)
        assert await store.update_pr(item_id, "https://github.com/acme/widgets/pull/1") is False
        item = store.get(item_id)
        assert item is not None
        assert item.status == status
        assert item.pr_url is None

    async def test_empty_url_rejected(self, store: WorkItemStore) -> None:
        item_id = await _item_in(store, WorkItemStatus.PROCESSING)
        with pytest.raises(ValidationError):
            await store.update_pr(item_id, "")

    async def test_unknown_id(self, store: WorkItemStore) -> None:
        assert await store.update_pr("req_missing", "https://x/pull/1") is False

    async def test_unstorable_report_leaves_item_untouched(
        self, store: WorkItemStore, persistence: MemoryPersistence
    ) -> None:
        item_id = await _item_in(store, WorkItemStatus.PROCESSING)
        seen: list[str] = []
        store.subscribe(lambda changed_id, item: seen.append(changed_id))
        saves = len(persistence.saved)

        with pytest.raises(ValidationError):
            await store.update_pr(
                item_id, "https://github.com/acme/widgets/pull/7", [{"finding": _Opaque()}]
            )

        item = store.get(item_id)
        assert item is not None
        assert item.status == WorkItemStatus.PROCESSING
        assert item.pr_url is None
        assert seen == []
        assert len(persistence.saved) == saves


@pytest.mark.asyncio
class TestQueries:
    async def test_pagination(self, store: WorkItemStore, clock: FakeClock) -> None:
        ids = []
        for n in range(15):
            ids.append(await store.create(f"Task {n}"))
            clock.advance(seconds=1)

        page = store.list_items(page=2, limit=10)
        assert len(page.items) == 5
        assert page.total == 15
        assert page.total_pages == 2
        assert page.page == 2

        first = store.list_items(page=1, limit=10)
        assert [item.id for item in first.items] == list(reversed(ids))[:10]

    async def test_empty_page(self, store: WorkItemStore) -> None:
        page = store.list_items()
        assert page.items == []
        assert page.total_pages == 0

    @pytest.mark.parametrize("page,limit", [(0, 10), (1, 0), (-1, 5)])
    async def test_invalid_paging(self, store: WorkItemStore, page: int, limit: int) -> None:
        with pytest.raises(ValidationError):
            store.list_items(page=page, limit=limit)

    async def test_stats(self, store: WorkItemStore) -> None:
        await _item_in(store, WorkItemStatus.PENDING)
        await _item_in(store, WorkItemStatus.PROCESSING)
        await _item_in(store, WorkItemStatus.PROCESSING)
        await _item_in(store, WorkItemStatus.COMPLETED)
        await _item_in(store, WorkItemStatus.FAILED)

        stats = store.stats()
        assert stats.model_dump() == {
            "total": 5,
            "pending": 1,
            "processing": 2,
            "completed": 1,
            "failed": 1,
        }

    async def test_query_by_status_newest_first(
        self, store: WorkItemStore, clock: FakeClock
    ) -> None:
        older = await _item_in(store, WorkItemStatus.PROCESSING)
        clock.advance(minutes=1)
        newer = await _item_in(store, WorkItemStatus.PROCESSING)
        await _item_in(store, WorkItemStatus.PENDING)

        processing = store.query_by_status("processing")
        assert [item.id for item in processing] == [newer, older]


@pytest.mark.asyncio
class TestCleanup:
    async def test_removes_only_old_terminal_items(
        self, store: WorkItemStore, clock: FakeClock
    ) -> None:
        old_completed = await _item_in(store, WorkItemStatus.COMPLETED)
        old_failed = await _item_in(store, WorkItemStatus.FAILED)
        old_pending = await _item_in(store, WorkItemStatus.PENDING)
        old_processing = await _item_in(store, WorkItemStatus.PROCESSING)
        clock.advance(days=31)
        recent_completed = await _item_in(store, WorkItemStatus.COMPLETED)

        removed = await store.cleanup(older_than_days=30)

        assert removed == 2
        assert store.get(old_completed) is None
        assert store.get(old_failed) is None
        for kept in (old_pending, old_processing, recent_completed):
            assert store.get(kept) is not None

    async def test_nothing_to_remove_skips_save(
        self, store: WorkItemStore, persistence: MemoryPersistence
    ) -> None:
        await _item_in(store, WorkItemStatus.COMPLETED)
        saves = len(persistence.saved)
        assert await store.cleanup(older_than_days=30) == 0
        assert len(persistence.saved) == saves


@pytest.mark.asyncio
class TestPersistence:
    async def test_every_mutation_saves_full_collection(
        self, store: WorkItemStore, persistence: MemoryPersistence
    ) -> None:
        first = await store.create("Task A")
        second = await store.create("Task B")
        await store.update_status(first, "processing")

        assert len(persistence.saved) == 3
        assert [item.id for item in persistence.saved[-1]] == [first, second]
        assert persistence.saved[-1][0].status == WorkItemStatus.PROCESSING

    async def test_save_failure_keeps_memory_state(
        self,
        store: WorkItemStore,
        persistence: MemoryPersistence,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        persistence.fail_saves = True
        received = []
        store.subscribe(lambda item_id, item: received.append(item.status))

        with caplog.at_level(logging.ERROR):
            item_id = await store.create("Add X")
            assert await store.update_status(item_id, "processing") is True

        item = store.get(item_id)
        assert item is not None
        assert item.status == WorkItemStatus.PROCESSING
        assert received == [WorkItemStatus.PENDING, WorkItemStatus.PROCESSING]
        assert "Failed to persist" in caplog.text

    async def test_load_restores_items(self, clock: FakeClock) -> None:
        existing = WorkItem(id="req_1_abc", task="Add X", created_at=clock(), updated_at=clock())
        store = WorkItemStore(MemoryPersistence([existing]), clock=clock)

        assert await store.load() == 1
        item = store.get("req_1_abc")
        assert item is not None
        assert item.task == "Add X"
