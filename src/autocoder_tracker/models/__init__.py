from autocoder_tracker.models.vcs import Branch, PullRequest
from autocoder_tracker.models.work_item import (
    Priority,
    RequestStats,
    WorkItem,
    WorkItemPage,
    WorkItemStatus,
)

__all__ = [
    "Branch",
    "PullRequest",
    "Priority",
    "RequestStats",
    "WorkItem",
    "WorkItemPage",
    "WorkItemStatus",
]
