from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Any, Protocol

from autocoder_tracker.errors import ValidationError, WorkerError
from autocoder_tracker.models.work_item import WorkItem, WorkItemStatus
from autocoder_tracker.services.branch_naming import branch_name_for
from autocoder_tracker.services.work_item_store import WorkItemStore

logger = logging.getLogger(__name__)

PR_URL_PREFIX = "PR_URL="


@dataclass
class WorkerResult:
    """What a worker reports back when it finished the job itself."""

    pr_url: str | None = None
    branch_name: str | None = None
    bug_report: list[dict[str, Any]] | None = None


class CodeWorker(Protocol):
    async def run(self, item: WorkItem, branch_name: str) -> WorkerResult | None: ...


class SubprocessWorker:
    """Run an external code-generation command for one work item.

    The item is passed through ``AUTOCODER_*`` environment variables. A
    ``PR_URL=<url>`` line on stdout means the command opened the pull request
    itself; otherwise completion is left to reconciliation.
    """

    def __init__(self, command: list[str], timeout: float | None = 1800):
        self.command = command
        self.timeout = timeout

    async def run(self, item: WorkItem, branch_name: str) -> WorkerResult | None:
        env = {
            **os.environ,
            "AUTOCODER_REQUEST_ID": item.id,
            "AUTOCODER_TASK": item.task,
            "AUTOCODER_LANGUAGE": item.language,
            "AUTOCODER_REPOSITORY": item.repository,
            "AUTOCODER_PRIORITY": item.priority.value,
            "AUTOCODER_BRANCH": branch_name,
        }
        proc = await asyncio.create_subprocess_exec(
            *self.command,
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise WorkerError(f"Worker timed out after {self.timeout}s") from exc
        finally:
            # also reached on cancellation during shutdown
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await asyncio.shield(proc.wait())

        if proc.returncode != 0:
            tail = stderr.decode(errors="replace").strip().splitlines()[-5:]
            raise WorkerError(
                f"Worker exited with {proc.returncode}: {' | '.join(tail)}",
                returncode=proc.returncode,
            )

        for line in reversed(stdout.decode(errors="replace").splitlines()):
            if line.startswith(PR_URL_PREFIX):
                pr_url = line[len(PR_URL_PREFIX):].strip()
                return WorkerResult(pr_url=pr_url, branch_name=branch_name)
        return None


class RequestDispatcher:
    """Hands pending work items to the code-generation worker.

    Each submitted item is claimed (pending -> processing) and processed in
    its own task. A worker that reports a pull request completes the item
    directly; reconciliation may race it, and the store makes whichever
    completion arrives second a no-op.
    """

    def __init__(self, store: WorkItemStore, worker: CodeWorker | None = None):
        self.store = store
        self.worker = worker
        self._tasks: set[asyncio.Task[None]] = set()

    def submit(self, item_id: str) -> asyncio.Task[None]:
        task = asyncio.create_task(self.process(item_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def process(self, item_id: str) -> None:
        item = self.store.get(item_id)
        if item is None:
            logger.warning("Cannot dispatch unknown work item %s", item_id)
            return
        if item.status != WorkItemStatus.PENDING:
            logger.warning("Work item %s is already %s", item_id, item.status.value)
            return
        if not await self.store.update_status(item_id, WorkItemStatus.PROCESSING):
            return
        if self.worker is None:
            logger.info("No worker configured, %s left to reconciliation", item_id)
            return

        branch_name = branch_name_for(item.task)
        try:
            result = await self.worker.run(item, branch_name)
        except Exception as exc:
            logger.error("Error processing work item %s: %s", item_id, exc)
            await self.store.update_status(
                item_id, WorkItemStatus.FAILED, {"error": str(exc) or type(exc).__name__}
            )
            return

        if result and result.pr_url:
            await self.store.update_branch(item_id, result.branch_name or branch_name)
            try:
                await self.store.update_pr(item_id, result.pr_url, result.bug_report)
            except ValidationError as exc:
                logger.error("Worker result for %s rejected: %s", item_id, exc)
                await self.store.update_status(
                    item_id, WorkItemStatus.FAILED, {"error": str(exc)}
                )

    async def stop(self) -> None:
        """Cancel outstanding worker jobs and wait for them to unwind."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    @property
    def active_jobs(self) -> int:
        return len(self._tasks)
