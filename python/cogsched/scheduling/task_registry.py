"""Authoritative store of task records and their lifecycle state.

Every status change goes through ``transition()``, which enforces the
allowed-transition table and appends to a transition stream.  The scheduler
drains that stream after each operation and turns it into bus events.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional

from cogsched.exceptions import InvalidTransitionError, TaskNotFoundError, ValidationError
from cogsched.scheduling.models import (
    ALLOWED_TRANSITIONS,
    Task,
    TaskStatus,
    TaskTransition,
)

logger = logging.getLogger(__name__)


class TaskRegistry:
    """In-memory task store keyed by id, in insertion order."""

    def __init__(self, clock: Optional[Callable[[], float]] = None, history_size: int = 1000) -> None:
        self._clock = clock or time.time
        self._tasks: Dict[int, Task] = {}
        self._pending_transitions: List[TaskTransition] = []
        self._history: Deque[TaskTransition] = deque(maxlen=history_size)
        self._highest_id = -1

    # ── Records ──────────────────────────────────────────────────────

    def next_id(self) -> int:
        """Next integer above the highest id ever seen."""
        return self._highest_id + 1

    def submit(self, task: Task) -> int:
        if task.id in self._tasks:
            raise ValidationError(f"Task {task.id} already exists", details={"task_id": task.id})
        now = self._clock()
        task.status = TaskStatus.PENDING
        task.status_updated_at = now
        self._tasks[task.id] = task
        self._highest_id = max(self._highest_id, task.id)
        self._record(TaskTransition(task.id, None, TaskStatus.PENDING, None, now))
        return task.id

    def get(self, task_id: int) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def find(self, task_id: int) -> Optional[Task]:
        return self._tasks.get(task_id)

    def status_of(self, task_id: int) -> Optional[TaskStatus]:
        task = self._tasks.get(task_id)
        return task.status if task is not None else None

    def remove(self, task_id: int) -> Task:
        """Forget a task.  Its id is never handed out again."""
        task = self.get(task_id)
        del self._tasks[task_id]
        logger.debug("Task %s removed from registry", task_id)
        return task

    # ── Lifecycle ────────────────────────────────────────────────────

    def transition(self, task_id: int, new_status: TaskStatus, reason: Optional[str] = None) -> Task:
        task = self.get(task_id)
        old = task.status
        if new_status not in ALLOWED_TRANSITIONS[old]:
            raise InvalidTransitionError(task_id, old.value, new_status.value)
        now = self._clock()
        task.status = new_status
        task.status_updated_at = now
        task.status_reason = reason
        self._record(TaskTransition(task_id, old, new_status, reason, now))
        logger.debug("Task %s: %s -> %s (%s)", task_id, old.value, new_status.value, reason)
        return task

    def list_by_status(self, status: TaskStatus) -> List[Task]:
        return [t for t in self._tasks.values() if t.status == status]

    def drain_transitions(self) -> List[TaskTransition]:
        drained, self._pending_transitions = self._pending_transitions, []
        return drained

    @property
    def history(self) -> List[TaskTransition]:
        return list(self._history)

    def _record(self, transition: TaskTransition) -> None:
        self._pending_transitions.append(transition)
        self._history.append(transition)

    # ── Introspection ────────────────────────────────────────────────

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    def __iter__(self):
        return iter(list(self._tasks.values()))

    @property
    def stats(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in TaskStatus}
        for task in self._tasks.values():
            counts[task.status.value] += 1
        counts["total"] = len(self._tasks)
        return counts
