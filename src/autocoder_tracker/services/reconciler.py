from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, TypeVar

from autocoder_tracker.errors import TransientExternalError
from autocoder_tracker.integrations.github import VcsClient
from autocoder_tracker.models.work_item import WorkItem, WorkItemStatus, utcnow
from autocoder_tracker.services.branch_naming import (
    branch_pattern_for,
    matches_pattern,
    select_latest_branch,
)
from autocoder_tracker.services.work_item_store import WorkItemStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ItemOutcome(str, Enum):
    SKIPPED = "skipped"  # already has a pull request
    NO_BRANCH = "no_branch"
    BRANCH_FOUND = "branch_found"  # branch exists, no pull request yet
    COMPLETED = "completed"
    ERROR = "error"
    FAILED = "failed"  # error threshold reached


@dataclass
class CycleReport:
    checked: int = 0
    outcomes: Counter[ItemOutcome] = field(default_factory=Counter)

    def record(self, outcome: ItemOutcome) -> None:
        self.checked += 1
        self.outcomes[outcome] += 1


class ReconciliationLoop:
    """Polls the VCS host to detect completion of processing work items.

    Design:
    - One cycle at a time. The background task awaits each cycle before
      sleeping, and ``run_cycle`` returns immediately if another caller is
      already inside a cycle.
    - Errors are counted per item in ``metadata.errorCount``. A cycle where
      the item's lookups succeed resets the counter; reaching
      ``error_threshold`` consecutive errors fails the item.
    - Stopping is cooperative: the item in flight finishes, the rest of the
      batch is left for the next start.
    """

    def __init__(
        self,
        store: WorkItemStore,
        vcs: VcsClient,
        interval_seconds: float = 30,
        error_threshold: int = 5,
        call_timeout: float | None = 15.0,
    ):
        self.store = store
        self.vcs = vcs
        self.interval_seconds = interval_seconds
        self.error_threshold = error_threshold
        self.call_timeout = call_timeout
        self.last_check: datetime | None = None
        self._cycle_mu = asyncio.Lock()
        self._stopping = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self.is_running:
            logger.warning("Reconciliation loop is already running")
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._loop())
        logger.info("Reconciliation loop started (every %ss)", self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None
        logger.info("Reconciliation loop stopped")

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def status(self) -> dict[str, Any]:
        return {
            "is_running": self.is_running,
            "last_check": self.last_check.isoformat() if self.last_check else None,
            "interval": self.interval_seconds,
            "processing_requests": len(self.store.query_by_status(WorkItemStatus.PROCESSING)),
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run_cycle(self) -> CycleReport | None:
        """Reconcile every processing item once.

        Returns None without doing anything when a cycle is already running.
        """
        if self._cycle_mu.locked():
            logger.debug("Reconciliation cycle already in progress, skipping")
            return None

        async with self._cycle_mu:
            self.last_check = utcnow()
            report = CycleReport()
            items = self.store.query_by_status(WorkItemStatus.PROCESSING)
            if items:
                logger.info("Checking %d processing work items", len(items))
            for item in items:
                if self._stopping.is_set():
                    break
                report.record(await self._reconcile_item(item))
            return report

    async def check_item(self, item_id: str) -> bool:
        """Reconcile a single item on demand. False if the id is unknown."""
        item = self.store.get(item_id)
        if item is None:
            return False
        if item.status == WorkItemStatus.PROCESSING:
            await self._reconcile_item(item)
        return True

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.run_cycle()
            except Exception:
                logger.exception("Error in reconciliation cycle")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

    async def _reconcile_item(self, item: WorkItem) -> ItemOutcome:
        if item.pr_url:
            return ItemOutcome.SKIPPED

        try:
            outcome = await self._resolve(item)
        except Exception as exc:
            logger.error("Error checking work item %s: %s", item.id, exc)
            return await self._record_error(item.id, exc)

        if outcome is not ItemOutcome.COMPLETED:
            await self._reset_errors(item.id)
        return outcome

    async def _resolve(self, item: WorkItem) -> ItemOutcome:
        pattern = branch_pattern_for(item.task)
        branches = await self._call(self.vcs.list_branches(item.repository))
        branch = select_latest_branch(b for b in branches if matches_pattern(b.name, pattern))
        if branch is None:
            return ItemOutcome.NO_BRANCH

        logger.info("Found branch for work item %s: %s", item.id, branch.name)
        if not item.branch_name:
            await self.store.update_branch(item.id, branch.name)

        pr = await self._call(
            self.vcs.find_pull_request_for_branch(item.repository, branch.name)
        )
        if pr is None:
            return ItemOutcome.BRANCH_FOUND

        logger.info("Found pull request for work item %s: %s", item.id, pr.url)
        await self.store.update_pr(item.id, pr.url)
        return ItemOutcome.COMPLETED

    async def _call(self, awaitable: Awaitable[T]) -> T:
        if self.call_timeout is None:
            return await awaitable
        try:
            return await asyncio.wait_for(awaitable, timeout=self.call_timeout)
        except asyncio.TimeoutError as exc:
            raise TransientExternalError(
                f"VCS call timed out after {self.call_timeout}s"
            ) from exc

    async def _record_error(self, item_id: str, exc: Exception) -> ItemOutcome:
        current = self.store.get(item_id)
        if current is None or current.status != WorkItemStatus.PROCESSING:
            return ItemOutcome.ERROR

        error_count = int(current.metadata.get("errorCount") or 0) + 1
        last_error = str(exc) or type(exc).__name__
        if error_count >= self.error_threshold:
            await self.store.update_status(
                item_id,
                WorkItemStatus.FAILED,
                {
                    "error": f"Too many reconciliation errors ({error_count}): {last_error}",
                    "errorCount": error_count,
                    "lastError": last_error,
                },
            )
            logger.warning(
                "Work item %s failed after %d reconciliation errors", item_id, error_count
            )
            return ItemOutcome.FAILED

        await self.store.update_status(
            item_id,
            WorkItemStatus.PROCESSING,
            {"errorCount": error_count, "lastError": last_error},
        )
        return ItemOutcome.ERROR

    async def _reset_errors(self, item_id: str) -> None:
        current = self.store.get(item_id)
        if current is None or not current.metadata.get("errorCount"):
            return
        await self.store.update_status(
            item_id, WorkItemStatus.PROCESSING, {"errorCount": 0, "lastError": None}
        )
