from __future__ import annotations

import asyncio
import logging

from autocoder_tracker.db.persistence import Persistence, create_persistence
from autocoder_tracker.integrations.github import GitHubClient, VcsClient
from autocoder_tracker.models.work_item import WorkItemStatus
from autocoder_tracker.services.dispatcher import RequestDispatcher, SubprocessWorker
from autocoder_tracker.services.reconciler import ReconciliationLoop
from autocoder_tracker.services.work_item_store import WorkItemStore
from autocoder_tracker.utils.config import Config

logger = logging.getLogger(__name__)


async def _retention_loop(
    store: WorkItemStore, retention_days: int, interval_seconds: float
) -> None:
    """Purge old terminal work items on a fixed interval.

    A failed sweep is logged and retried on the next tick.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            removed = await store.cleanup(retention_days)
        except Exception:
            logger.exception("Error in retention sweep")
            continue
        if removed:
            logger.info("Retention sweep removed %d work items", removed)


class AppServices:
    """Owns the store and its collaborators for one running process."""

    def __init__(self, config: Config, vcs: VcsClient | None = None):
        self.config = config
        self.persistence: Persistence = create_persistence(config.storage, config.data_path)
        self.store = WorkItemStore(self.persistence)
        self._github: GitHubClient | None = None
        if vcs is None:
            self._github = GitHubClient(
                token=config.github_token,
                base_url=config.github_api_url,
                timeout=config.vcs_timeout,
            )
            vcs = self._github
        self.reconciler = ReconciliationLoop(
            self.store,
            vcs,
            interval_seconds=config.poll_interval,
            error_threshold=config.error_threshold,
            call_timeout=config.vcs_timeout,
        )
        worker = (
            SubprocessWorker(config.worker_command, timeout=config.worker_timeout)
            if config.worker_command
            else None
        )
        self.dispatcher = RequestDispatcher(self.store, worker)
        self._retention_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """Initialize storage and restore the persisted collection."""
        await self.persistence.initialize()
        await self.store.load()

    async def start(self) -> None:
        """Start the background activities: reconciliation and retention.

        Requests left pending by a previous run are dispatched again.
        """
        for item in reversed(self.store.query_by_status(WorkItemStatus.PENDING)):
            self.dispatcher.submit(item.id)
        await self.reconciler.start()
        self._retention_task = asyncio.create_task(
            _retention_loop(
                self.store,
                self.config.retention_days,
                max(1, self.config.cleanup_interval),
            )
        )

    async def close(self) -> None:
        if self._retention_task:
            self._retention_task.cancel()
            try:
                await self._retention_task
            except asyncio.CancelledError:
                pass
            self._retention_task = None
        await self.reconciler.stop()
        await self.dispatcher.stop()
        if self._github:
            await self._github.close()
        await self.persistence.close()
        logger.info("Autocoder tracker services stopped")

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    async def submit(
        self,
        task: str,
        language: str | None = None,
        repository: str | None = None,
        priority: str | None = None,
        requester: str | None = None,
    ) -> str:
        """Create a work item and hand it to the dispatcher."""
        item_id = await self.store.create(
            task,
            language=language,
            repository=repository or self.config.default_repo,
            priority=priority,
            requester=requester,
        )
        self.dispatcher.submit(item_id)
        return item_id
