"""Branch naming shared by the code-generation worker and reconciliation.

Workers create ``auto-<epoch-ms>-<slug>`` branches. Reconciliation cannot
know the timestamp, so it searches with ``auto-*-<slug>*`` instead. The
search is fuzzy: a task whose slug is a prefix of another task's slug will
match that task's branches too.
"""

from __future__ import annotations

import re
import time
from datetime import datetime, timezone
from typing import Iterable

from autocoder_tracker.errors import ReconciliationError
from autocoder_tracker.models.vcs import Branch

BRANCH_PREFIX = "auto"
SLUG_MAX_LENGTH = 50

_NON_SLUG = re.compile(r"[^a-z0-9\s]")
_WHITESPACE = re.compile(r"\s+")
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def task_slug(task: str) -> str:
    slug = _NON_SLUG.sub("", task.lower()).strip()
    slug = _WHITESPACE.sub("-", slug)
    return slug[:SLUG_MAX_LENGTH]


def branch_name_for(task: str, now: float | None = None) -> str:
    timestamp_ms = int((time.time() if now is None else now) * 1000)
    return f"{BRANCH_PREFIX}-{timestamp_ms}-{task_slug(task)}"


def branch_pattern_for(task: str) -> str:
    slug = task_slug(task)
    if not slug:
        raise ReconciliationError(f"Task {task!r} has no searchable branch slug")
    return f"{BRANCH_PREFIX}-*-{slug}*"


def pattern_to_regex(pattern: str) -> re.Pattern[str]:
    """Translate a ``*`` wildcard pattern into an anchored, case-insensitive regex."""
    parts = re.split(r"(\*)", pattern)
    body = "".join(".*" if part == "*" else re.escape(part) for part in parts)
    return re.compile(f"^{body}$", re.IGNORECASE | re.DOTALL)


def matches_pattern(name: str, pattern: str) -> bool:
    return pattern_to_regex(pattern).match(name) is not None


def select_latest_branch(branches: Iterable[Branch]) -> Branch | None:
    """Newest branch by creation time; the greatest name breaks ties."""
    return max(
        branches,
        key=lambda branch: (branch.created_at or _EPOCH, branch.name),
        default=None,
    )
