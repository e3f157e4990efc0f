from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Callable

from autocoder_tracker.models.work_item import WorkItem
from autocoder_tracker.services.work_item_store import WorkItemStore

logger = logging.getLogger(__name__)

Event = dict[str, Any]


def format_sse(event: Event) -> str:
    return f"data: {json.dumps(event)}\n\n"


class UpdateStream:
    """One live observer of the store, buffered through a bounded queue.

    The store publishes synchronously; this class decouples a slow client
    from the mutating caller. When the queue is full the newest event is
    dropped and counted. Events for one item stay in mutation order.

    Usage::

        async with UpdateStream(store) as stream:
            async for event in stream.events():
                ...
    """

    def __init__(self, store: WorkItemStore, max_queue: int = 100):
        self.store = store
        self.dropped = 0
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max_queue)
        self._unsubscribe: Callable[[], None] | None = None

    async def __aenter__(self) -> UpdateStream:
        self._unsubscribe = self.store.subscribe(self._on_update)
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

    async def events(self) -> AsyncIterator[Event]:
        yield {"type": "connected", "message": "Real-time updates enabled"}
        while True:
            yield await self._queue.get()

    def _on_update(self, item_id: str, item: WorkItem) -> None:
        event = {"type": "request_update", "id": item_id, "item": item.to_record()}
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Update stream full, dropped event for %s", item_id)
