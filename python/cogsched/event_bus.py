"""In-process pub/sub for scheduler lifecycle events.

The runtime publishes the scheduler outbox here and listens for
``memory_updated``.  Handlers run in subscription order; one that raises is
logged and skipped so the remaining handlers still see the event.
"""

import inspect
import itertools
import logging
from collections import Counter, deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple

from cogsched.interfaces.event_bus import EventType

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Optional[Awaitable[None]]]


class InMemoryEventBus:
    """Single-process ``IEventBus`` implementation.

    Keeps per-type publish counts and, when ``history_size`` is set, the most
    recent events for inspection.
    """

    def __init__(self, history_size: int = 0) -> None:
        self._handlers: Dict[EventType, Dict[str, Handler]] = {}
        self._ids = itertools.count(1)
        self._published: Counter = Counter()
        self._failures = 0
        self._recent: Deque[Tuple[EventType, Dict[str, Any]]] = deque(maxlen=history_size or None)
        self._keep_history = history_size > 0

    async def publish(
        self,
        event_type: EventType,
        data: Dict[str, Any],
        source: Optional[str] = None,
    ) -> int:
        """Deliver *data* to every handler of *event_type*.

        Returns the number of handlers that ran without raising.
        """
        payload = {**data, "_source": source} if source else data
        self._published[event_type] += 1
        if self._keep_history:
            self._recent.append((event_type, payload))

        delivered = 0
        for sub_id, handler in list(self._handlers.get(event_type, {}).items()):
            try:
                outcome = handler(payload)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                self._failures += 1
                logger.exception("Event handler failed for %s (subscription %s)", event_type.value, sub_id)
                continue
            delivered += 1
        return delivered

    async def subscribe(self, event_type: EventType, handler: Handler) -> str:
        sub_id = f"{event_type.value}-{next(self._ids)}"
        self._handlers.setdefault(event_type, {})[sub_id] = handler
        return sub_id

    async def unsubscribe(self, subscription_id: str) -> None:
        for handlers in self._handlers.values():
            if handlers.pop(subscription_id, None) is not None:
                return

    def subscriber_count(self, event_type: EventType) -> int:
        return len(self._handlers.get(event_type, {}))

    def recent(self, event_type: Optional[EventType] = None) -> List[Dict[str, Any]]:
        """Payloads still held in history, oldest first."""
        return [data for et, data in self._recent if event_type is None or et == event_type]

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "published": {et.value: n for et, n in self._published.items()},
            "subscriptions": sum(len(h) for h in self._handlers.values()),
            "handler_failures": self._failures,
        }
