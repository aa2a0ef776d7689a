"""SchedulerRuntime: message pump between the scheduler and the outside.

Inbound, it classifies response-protocol messages (``task``, ``response``,
``error``) and routes them to scheduler operations, and folds
``memory_updated`` bus events into a ``CompletedTopics`` view.  Outbound, it
publishes the scheduler's outbox on the event bus and hands dispatched tasks
to an optional dispatcher coroutine (the execution collaborator).

The scheduler stays synchronous; everything that awaits lives here.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from cogsched.exceptions import SchedulerException
from cogsched.interfaces.event_bus import EventType, IEventBus
from cogsched.interfaces.state_snapshot import CompletedTopics
from cogsched.scheduling.models import Task
from cogsched.scheduling.scheduler import Scheduler

logger = logging.getLogger(__name__)

Dispatcher = Callable[[Task], Awaitable[None]]

_WAKE = object()
_STOP = object()


class SchedulerRuntime:
    """Routes messages to the scheduler and publishes what it produces."""

    def __init__(
        self,
        scheduler: Scheduler,
        event_bus: IEventBus,
        topics: Optional[CompletedTopics] = None,
        dispatcher: Optional[Dispatcher] = None,
        source: str = "scheduler",
    ) -> None:
        self.scheduler = scheduler
        self.event_bus = event_bus
        self.topics = topics if topics is not None else CompletedTopics()
        self._dispatcher = dispatcher
        self._source = source
        self._inbox: "asyncio.Queue[Any]" = asyncio.Queue()
        self._subscription: Optional[str] = None
        self._running = False
        self._handlers: Dict[str, Callable[[Mapping[str, Any]], Dict[str, Any]]] = {
            "task": self._on_task,
            "response": self._on_response,
            "error": self._on_error,
        }
        scheduler.set_event_listener(self._wake)

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._subscription is None:
            self._subscription = await self.event_bus.subscribe(
                EventType.MEMORY_UPDATED, self._on_memory_updated,
            )

    async def stop(self) -> None:
        self._running = False
        self._inbox.put_nowait(_STOP)
        if self._subscription is not None:
            await self.event_bus.unsubscribe(self._subscription)
            self._subscription = None

    async def run(self) -> None:
        """Consume the inbox until ``stop()`` is called."""
        await self.start()
        self._running = True
        logger.info("Scheduler runtime started")
        while self._running:
            item = await self._inbox.get()
            if item is _STOP:
                break
            try:
                if item is _WAKE:
                    await self.pump()
                else:
                    await self.handle_message(item)
            except Exception:
                logger.exception("Runtime failed to process inbox item")
        logger.info("Scheduler runtime stopped")

    def put(self, message: Mapping[str, Any]) -> None:
        """Queue an inbound message for ``run()``."""
        self._inbox.put_nowait(message)

    def _wake(self) -> None:
        self._inbox.put_nowait(_WAKE)

    # ── Inbound ──────────────────────────────────────────────────────

    async def handle_message(self, message: Any) -> Dict[str, Any]:
        """Route one message, then publish and dispatch whatever it unblocked.

        Unknown types and unknown task ids are logged and ignored.
        """
        if not isinstance(message, Mapping):
            logger.warning("Ignoring non-mapping message of type %s", type(message).__name__)
            return {"status": "ignored", "reason": "not_a_mapping"}

        msg_type = message.get("type")
        handler = self._handlers.get(msg_type)
        if handler is None:
            logger.warning("Ignoring message with unknown type %r", msg_type)
            return {"status": "ignored", "reason": "unknown_type"}

        try:
            outcome = handler(message)
        except SchedulerException as exc:
            logger.warning("Message %r rejected: %s", msg_type, exc)
            await self.event_bus.publish(
                EventType.ERROR_OCCURRED,
                {"message_type": msg_type, "error": exc.to_dict()},
                source=self._source,
            )
            outcome = {"status": "rejected", "error": exc.message}

        await self.pump()
        return outcome

    def _on_task(self, message: Mapping[str, Any]) -> Dict[str, Any]:
        payload = {k: v for k, v in message.items() if k != "type"}
        task_id = self.scheduler.submit(payload)
        return {"status": "accepted", "task_id": task_id}

    def _on_response(self, message: Mapping[str, Any]) -> Dict[str, Any]:
        task_id = message.get("task_id")
        logger.debug("Response for task %s from %s", task_id, message.get("subsystem"))
        self.scheduler.report_completion(task_id, message.get("result"))
        return {"status": "completed", "task_id": task_id}

    def _on_error(self, message: Mapping[str, Any]) -> Dict[str, Any]:
        task_id = message.get("task_id")
        self.scheduler.report_failure(task_id, str(message.get("error") or ""))
        return {"status": "failed", "task_id": task_id}

    async def _on_memory_updated(self, data: Dict[str, Any]) -> None:
        topic = data.get("topic")
        if not isinstance(topic, str):
            logger.warning("memory_updated without a topic: %r", data)
            return
        if self.topics.apply_update(topic, str(data.get("status", ""))):
            self.scheduler.on_external_state_change(self.topics.satisfied_labels())
            await self.pump()

    # ── Outbound ─────────────────────────────────────────────────────

    async def publish_pending(self) -> int:
        events = self.scheduler.drain_events()
        for event in events:
            await self.event_bus.publish(event.event_type, event.data, source=self._source)
        return len(events)

    async def pump(self) -> List[Task]:
        """Publish the outbox, then dispatch READY tasks while slots remain."""
        await self.publish_pending()
        dispatched: List[Task] = []
        while True:
            task = self.scheduler.schedule_next_task()
            if task is None:
                break
            dispatched.append(task)
            await self.publish_pending()
            if self._dispatcher is None:
                continue
            try:
                await self._dispatcher(task)
            except Exception as exc:
                logger.exception("Dispatcher raised for task %s", task.id)
                self.scheduler.report_failure(task.id, str(exc))
                await self.publish_pending()
        return dispatched
