from __future__ import annotations

import asyncio
import logging
import math
import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable

from autocoder_tracker.db.persistence import Persistence
from autocoder_tracker.errors import PersistenceError, ValidationError
from autocoder_tracker.models.work_item import (
    Priority,
    RequestStats,
    WorkItem,
    WorkItemPage,
    WorkItemStatus,
    can_transition,
    utcnow,
)
from autocoder_tracker.services.notification_bus import NotificationBus, Subscriber

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class WorkItemStore:
    """In-memory work item collection with snapshot persistence.

    Design:
    - Insertion-ordered dict keyed by id; the in-memory state is authoritative.
    - asyncio.Lock around every read-modify-write and the persistence write.
    - The full collection is saved after each mutation. A failed save is
      logged and never undoes the mutation or fails the caller.
    - Subscribers are notified after the lock is released, so they may read
      the store again from inside the callback.
    """

    def __init__(
        self,
        persistence: Persistence,
        bus: NotificationBus | None = None,
        clock: Clock = utcnow,
    ):
        self._persistence = persistence
        self._bus = bus or NotificationBus()
        self._clock = clock
        self._items: dict[str, WorkItem] = {}
        self._mu = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def load(self) -> int:
        """Replace the in-memory collection with the persisted snapshot."""
        items = await self._persistence.load()
        async with self._mu:
            self._items = {item.id: item for item in items}
        logger.info("Restored %d work items", len(self._items))
        return len(self._items)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def create(
        self,
        task: str,
        language: str | None = None,
        repository: str | None = None,
        priority: Priority | str | None = None,
        requester: str | None = None,
    ) -> str:
        task = (task or "").strip()
        if not task:
            raise ValidationError("Task description is required")
        try:
            priority = Priority(priority or Priority.MEDIUM)
        except ValueError as exc:
            raise ValidationError(f"Unknown priority: {priority!r}") from exc

        async with self._mu:
            item_id = self._generate_id()
            now = self._clock()
            item = WorkItem(
                id=item_id,
                task=task,
                language=language or "auto-detect",
                repository=repository or "",
                priority=priority,
                requester=requester or "web-user",
                status=WorkItemStatus.PENDING,
                created_at=now,
                updated_at=now,
            )
            snapshot = await self._commit(item)

        self._bus.publish(item_id, snapshot)
        logger.info("Added work item %s - %s", item_id, task)
        return item_id

    async def update_status(
        self,
        item_id: str,
        status: WorkItemStatus | str,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        status = WorkItemStatus(status)
        async with self._mu:
            item = self._items.get(item_id)
            if item is None:
                logger.warning("Status update for unknown work item %s", item_id)
                return False
            if not can_transition(item.status, status):
                logger.warning(
                    "Rejected transition %s -> %s for %s",
                    item.status.value,
                    status.value,
                    item_id,
                )
                return False

            changes: dict[str, Any] = {"status": status, "updated_at": self._bump(item)}
            if metadata:
                changes["metadata"] = {**item.metadata, **metadata}
            snapshot = await self._commit(self._apply(item, changes))

        self._bus.publish(item_id, snapshot)
        logger.info("Updated work item %s: %s", item_id, status.value)
        return True

    async def update_branch(self, item_id: str, branch_name: str) -> bool:
        """Record the item's branch. The first recorded name is never replaced."""
        async with self._mu:
            item = self._items.get(item_id)
            if item is None or item.is_terminal or item.branch_name:
                return False
            snapshot = await self._commit(
                self._apply(
                    item, {"branch_name": branch_name, "updated_at": self._bump(item)}
                )
            )

        self._bus.publish(item_id, snapshot)
        logger.info("Work item %s is on branch %s", item_id, branch_name)
        return True

    async def update_pr(
        self,
        item_id: str,
        pr_url: str,
        bug_report: list[dict[str, Any]] | None = None,
    ) -> bool:
        """Complete a processing item with its pull request.

        Returns False for unknown ids and for items that are not processing,
        which makes a second completion of the same item a no-op.
        """
        if not pr_url:
            raise ValidationError("Pull request URL is required")

        async with self._mu:
            item = self._items.get(item_id)
            if item is None:
                return False
            if not can_transition(item.status, WorkItemStatus.COMPLETED):
                logger.info(
                    "Ignoring pull request for %s work item %s", item.status.value, item_id
                )
                return False

            updated_at = self._bump(item)
            elapsed = (updated_at - item.created_at).total_seconds()
            changes: dict[str, Any] = {
                "status": WorkItemStatus.COMPLETED,
                "pr_url": pr_url,
                "updated_at": updated_at,
                "metadata": {**item.metadata, "processingTime": round(elapsed)},
            }
            if bug_report is not None:
                changes["bug_report"] = list(bug_report)
            snapshot = await self._commit(self._apply(item, changes))

        self._bus.publish(item_id, snapshot)
        logger.info("Work item %s completed: %s", item_id, pr_url)
        return True

    async def cleanup(self, older_than_days: int = 30) -> int:
        """Purge terminal items created before the retention cutoff."""
        cutoff = self._clock() - timedelta(days=older_than_days)
        async with self._mu:
            expired = [
                item_id
                for item_id, item in self._items.items()
                if item.is_terminal and item.created_at < cutoff
            ]
            for item_id in expired:
                del self._items[item_id]
            if expired:
                await self._persist()

        if expired:
            logger.info("Cleaned up %d old work items", len(expired))
        return len(expired)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, item_id: str) -> WorkItem | None:
        item = self._items.get(item_id)
        return item.model_copy(deep=True) if item else None

    def list_items(self, page: int = 1, limit: int = 10) -> WorkItemPage:
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")
        ordered = self._newest_first(self._items.values())
        start = (page - 1) * limit
        return WorkItemPage(
            items=[item.model_copy(deep=True) for item in ordered[start : start + limit]],
            total=len(ordered),
            page=page,
            total_pages=math.ceil(len(ordered) / limit),
        )

    def query_by_status(self, status: WorkItemStatus | str) -> list[WorkItem]:
        status = WorkItemStatus(status)
        return [
            item.model_copy(deep=True)
            for item in self._newest_first(self._items.values())
            if item.status == status
        ]

    def stats(self) -> RequestStats:
        counts = {status: 0 for status in WorkItemStatus}
        for item in self._items.values():
            counts[item.status] += 1
        return RequestStats(
            total=len(self._items),
            pending=counts[WorkItemStatus.PENDING],
            processing=counts[WorkItemStatus.PROCESSING],
            completed=counts[WorkItemStatus.COMPLETED],
            failed=counts[WorkItemStatus.FAILED],
        )

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        return self._bus.subscribe(callback)

    def __len__(self) -> int:
        return len(self._items)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _apply(item: WorkItem, changes: dict[str, Any]) -> WorkItem:
        """Build the updated item, rejecting values that cannot be stored.

        Raises ``ValidationError`` before anything is swapped in, so a bad
        update leaves the item, the snapshot and subscribers untouched.
        """
        try:
            updated = WorkItem.model_validate({**item.model_dump(), **changes})
            updated.to_record()
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid update for work item {item.id}: {exc}") from exc
        return updated

    async def _commit(self, item: WorkItem) -> WorkItem:
        """Swap in the new item, persist, and return a snapshot (caller holds _mu)."""
        self._items[item.id] = item
        await self._persist()
        return item.model_copy(deep=True)

    async def _persist(self) -> None:
        try:
            await self._persistence.save_all(list(self._items.values()))
        except PersistenceError:
            logger.exception("Failed to persist %d work items", len(self._items))

    def _bump(self, item: WorkItem) -> datetime:
        return max(self._clock(), item.updated_at)

    def _generate_id(self) -> str:
        while True:
            item_id = f"req_{time.time_ns() // 1_000_000}_{uuid.uuid4().hex[:8]}"
            if item_id not in self._items:
                return item_id

    @staticmethod
    def _newest_first(items: Iterable[WorkItem]) -> list[WorkItem]:
        return sorted(items, key=lambda item: item.created_at, reverse=True)
