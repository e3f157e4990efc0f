from __future__ import annotations

import logging
from typing import AsyncIterator

from mcp.server.fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse

from autocoder_tracker.app import AppServices
from autocoder_tracker.models.work_item import utcnow
from autocoder_tracker.services.update_stream import UpdateStream, format_sse
from autocoder_tracker.tools import requests as request_tools

logger = logging.getLogger(__name__)


def create_server(services: AppServices) -> FastMCP:
    """Build the MCP server with request tools and the live-update routes."""
    config = services.config
    server = FastMCP("AutocoderTracker", host=config.host, port=config.port)

    request_tools.register(server, services)

    @server.resource("autocoder://stats")
    async def get_stats() -> str:
        stats = services.store.stats()
        polling = services.reconciler.status()
        return (
            "Autocoder Tracker Status:\n"
            f"- Total Requests: {stats.total}\n"
            f"- Pending: {stats.pending}\n"
            f"- Processing: {stats.processing}\n"
            f"- Completed: {stats.completed}\n"
            f"- Failed: {stats.failed}\n"
            f"- Last GitHub Check: {polling['last_check'] or 'never'}\n"
        )

    @server.custom_route("/api/events", methods=["GET"])
    async def events(request: Request) -> Response:
        async def stream() -> AsyncIterator[str]:
            async with UpdateStream(services.store, config.event_queue_size) as updates:
                async for event in updates.events():
                    if await request.is_disconnected():
                        break
                    yield format_sse(event)

        return StreamingResponse(
            stream(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    @server.custom_route("/api/status", methods=["GET"])
    async def status(request: Request) -> Response:
        return JSONResponse(
            {
                "system": "operational",
                "requests": services.store.stats().model_dump(),
                "polling": services.reconciler.status(),
                "activeJobs": services.dispatcher.active_jobs,
            }
        )

    @server.custom_route("/health", methods=["GET"])
    async def health(request: Request) -> Response:
        return JSONResponse({"status": "healthy", "timestamp": utcnow().isoformat()})

    return server


async def serve(services: AppServices, transport: str = "stdio") -> None:
    """Open the services, run the server until it exits, then shut down."""
    await services.open()
    await services.start()
    server = create_server(services)
    logger.info("Autocoder tracker ready (%s transport)", transport)
    try:
        if transport == "sse":
            await server.run_sse_async()
        elif transport == "streamable-http":
            await server.run_streamable_http_async()
        else:
            await server.run_stdio_async()
    finally:
        await services.close()
