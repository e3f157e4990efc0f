from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkItemStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


TERMINAL_STATUSES = frozenset({WorkItemStatus.COMPLETED, WorkItemStatus.FAILED})

ALLOWED_TRANSITIONS: dict[WorkItemStatus, frozenset[WorkItemStatus]] = {
    WorkItemStatus.PENDING: frozenset({WorkItemStatus.PROCESSING}),
    WorkItemStatus.PROCESSING: frozenset(
        {WorkItemStatus.PROCESSING, WorkItemStatus.COMPLETED, WorkItemStatus.FAILED}
    ),
    WorkItemStatus.COMPLETED: frozenset(),
    WorkItemStatus.FAILED: frozenset(),
}


def can_transition(current: WorkItemStatus, target: WorkItemStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class WorkItem(_CamelModel):
    """A tracked code-generation request.

    Serialised with camelCase keys (``createdAt``, ``prUrl`` ...), which is
    both the persisted record layout and the shape pushed to live observers.
    """

    id: str
    task: str
    language: str = "auto-detect"
    repository: str = ""
    priority: Priority = Priority.MEDIUM
    requester: str = "web-user"
    status: WorkItemStatus = WorkItemStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    branch_name: Optional[str] = None
    pr_url: Optional[str] = None
    bug_report: Optional[list[dict[str, Any]]] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class RequestStats(_CamelModel):
    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0


class WorkItemPage(_CamelModel):
    items: list[WorkItem]
    total: int
    page: int
    total_pages: int
