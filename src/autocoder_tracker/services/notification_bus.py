from __future__ import annotations

import itertools
import logging
from typing import Callable

from autocoder_tracker.models.work_item import WorkItem

logger = logging.getLogger(__name__)

Subscriber = Callable[[str, WorkItem], None]


class NotificationBus:
    """Synchronous fan-out of work item snapshots.

    Subscribers are called in registration order, each with its own copy of
    the post-mutation item. A subscriber that raises is logged and skipped;
    the remaining subscribers and the publisher are unaffected.
    """

    def __init__(self) -> None:
        self._subscribers: dict[int, Subscriber] = {}
        self._tokens = itertools.count()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        token = next(self._tokens)
        self._subscribers[token] = callback

        def unsubscribe() -> None:
            self._subscribers.pop(token, None)

        return unsubscribe

    def publish(self, item_id: str, item: WorkItem) -> None:
        # Copy the registry: a callback may unsubscribe itself mid-fan-out.
        for callback in list(self._subscribers.values()):
            try:
                callback(item_id, item.model_copy(deep=True))
            except Exception:
                logger.exception("Subscriber %r failed for %s", callback, item_id)

    def __len__(self) -> int:
        return len(self._subscribers)
