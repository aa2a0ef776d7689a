"""Event names and the bus contract the runtime publishes through."""

from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol


class EventType(Enum):
    """Events exchanged between the scheduler and its collaborators."""

    # Produced by the scheduler, one per lifecycle transition
    TASK_SUBMITTED = "task_submitted"
    TASK_DEFERRED = "task_deferred"
    TASK_READY = "task_ready"
    TASK_ACTIVATED = "task_activated"  # deferred -> ready
    TASK_STARTED = "task_started"
    TASK_RETRY_SCHEDULED = "task_retry_scheduled"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"

    # Consumed: {topic, status} from the memory collaborator
    MEMORY_UPDATED = "memory_updated"

    # Rejected inbound messages
    ERROR_OCCURRED = "error_occurred"


class IEventBus(Protocol):
    """Async publish/subscribe keyed by ``EventType``.

    ``publish`` must not raise because a handler did; ``subscribe`` returns
    an opaque id accepted by ``unsubscribe``.
    """

    async def publish(
        self,
        event_type: EventType,
        data: Dict[str, Any],
        source: Optional[str] = None,
    ) -> Any:
        ...

    async def subscribe(
        self,
        event_type: EventType,
        handler: Callable[[Dict[str, Any]], Optional[Awaitable[None]]],
    ) -> str:
        ...

    async def unsubscribe(self, subscription_id: str) -> None:
        ...
