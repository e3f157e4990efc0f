"""
GitHub REST client for branch and pull-request lookups.

Only the two read calls reconciliation needs are implemented. Every
transport or HTTP failure surfaces as ``TransientExternalError`` so the
caller can count it against the work item and retry on the next cycle.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from autocoder_tracker.errors import TransientExternalError
from autocoder_tracker.models.vcs import Branch, PullRequest

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"
PER_PAGE = 100


class VcsClient(Protocol):
    async def list_branches(self, repository: str) -> list[Branch]: ...

    async def find_pull_request_for_branch(
        self, repository: str, branch_name: str
    ) -> PullRequest | None: ...


def split_repository(repository: str) -> tuple[str, str]:
    owner, _, name = (repository or "").strip().partition("/")
    if not owner or not name or "/" in name:
        raise TransientExternalError(
            f"Repository must look like 'owner/name', got {repository!r}"
        )
    return owner, name


class GitHubClient:
    """Async GitHub client built on httpx."""

    def __init__(
        self,
        token: str | None = None,
        base_url: str = DEFAULT_API_URL,
        timeout: float = 30.0,
        max_pages: int = 10,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self.max_pages = max_pages
        self.client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def list_branches(self, repository: str) -> list[Branch]:
        owner, name = split_repository(repository)
        branches: list[Branch] = []
        for page in range(1, self.max_pages + 1):
            data = await self._get_json(
                f"/repos/{owner}/{name}/branches",
                params={"per_page": PER_PAGE, "page": page},
            )
            branches.extend(
                Branch(name=entry["name"], head_ref=entry.get("commit", {}).get("sha", ""))
                for entry in data
            )
            if len(data) < PER_PAGE:
                break
        else:
            logger.warning(
                "Stopped listing branches of %s after %d pages", repository, self.max_pages
            )
        return branches

    async def find_pull_request_for_branch(
        self, repository: str, branch_name: str
    ) -> PullRequest | None:
        owner, name = split_repository(repository)
        data = await self._get_json(
            f"/repos/{owner}/{name}/pulls",
            params={"head": f"{owner}:{branch_name}", "state": "all", "per_page": 1},
        )
        if not data:
            return None
        pr = data[0]
        return PullRequest(
            url=pr["html_url"],
            number=pr.get("number"),
            state=pr.get("state", "open"),
            head_ref=pr.get("head", {}).get("ref"),
        )

    async def _get_json(self, path: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        try:
            response = await self.client.get(path, params=params)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            logger.error("GitHub request %s failed: %s", path, e)
            raise TransientExternalError(f"GitHub request {path} failed: {e}") from e
        except ValueError as e:
            raise TransientExternalError(f"GitHub returned invalid JSON for {path}") from e
        if not isinstance(data, list):
            raise TransientExternalError(f"Unexpected GitHub payload for {path}")
        return data
