from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class Branch(BaseModel):
    """A branch as reported by the VCS host."""

    name: str
    head_ref: str = ""
    created_at: Optional[datetime] = None  # GitHub does not report this


class PullRequest(BaseModel):
    url: str
    number: Optional[int] = None
    state: str = "open"
    head_ref: Optional[str] = None
