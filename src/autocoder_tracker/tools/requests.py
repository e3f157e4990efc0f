from __future__ import annotations

from mcp.server.fastmcp import FastMCP

from autocoder_tracker.app import AppServices
from autocoder_tracker.errors import ValidationError


def register(mcp: FastMCP, services: AppServices) -> None:
    """Register code-request MCP tools."""
    store = services.store

    @mcp.tool()
    async def submit_code_request(
        task: str,
        language: str = "auto-detect",
        repository: str | None = None,
        priority: str = "medium",
    ) -> dict:
        """Submit a new code-generation request.

        The request starts as ``pending`` and is picked up by the worker.
        Completion is detected when a pull request for its branch appears.

        Args:
            task: What the generated code should do (required)
            language: Target language, or "auto-detect"
            repository: GitHub repository as "owner/name" (defaults to DEFAULT_REPO)
            priority: low, medium or high
        """
        try:
            item_id = await services.submit(
                task, language=language, repository=repository, priority=priority
            )
        except ValidationError as exc:
            return {"success": False, "error": str(exc)}
        return {"success": True, "id": item_id, "status": "pending"}

    @mcp.tool()
    async def get_request(request_id: str) -> dict | None:
        """Get one code request by id, or null if it does not exist."""
        item = store.get(request_id)
        return item.to_record() if item else None

    @mcp.tool()
    async def list_requests(page: int = 1, limit: int = 10) -> dict:
        """List code requests, newest first, one page at a time."""
        try:
            result = store.list_items(page, limit)
        except ValidationError as exc:
            return {"success": False, "error": str(exc)}
        return result.model_dump(mode="json", by_alias=True)

    @mcp.tool()
    async def get_request_stats() -> dict:
        """Count code requests per status."""
        return store.stats().model_dump()

    @mcp.tool()
    async def check_request(request_id: str) -> dict:
        """Check GitHub right now for the branch and pull request of one request."""
        found = await services.reconciler.check_item(request_id)
        if not found:
            return {"success": False, "error": f"Request {request_id} not found"}
        item = store.get(request_id)
        return {"success": True, "request": item.to_record() if item else None}
