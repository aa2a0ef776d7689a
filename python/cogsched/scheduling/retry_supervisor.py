"""Per-task execution timers and retry/backoff decisions.

The supervisor owns every timer the engine has: one execution timer per
RUNNING task and one backoff timer per task waiting to be re-inserted.  It
decides whether a failed attempt may be retried, but never mutates task
state itself; the scheduler's callbacks do that.

Timers come from a ``TimerService`` so tests can drive time by hand.  The
default ``AsyncioTimerService`` schedules on the running event loop, so
callbacks run on the same loop as every other scheduler operation.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol

from cogsched.exceptions import RetryConfig, TaskTimeoutError
from cogsched.scheduling.models import Task

logger = logging.getLogger(__name__)


# ── Timer abstraction ────────────────────────────────────────────────


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


class TimerService(Protocol):
    """Schedules a zero-argument callback after a delay in seconds."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        ...


class AsyncioTimerService:
    """``TimerService`` backed by ``loop.call_later``.

    Without an explicit loop, the loop running at scheduling time is used,
    so timers must be armed from inside a coroutine.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(delay, callback)


# ── Decisions ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of one failed attempt."""

    task_id: int
    should_retry: bool
    reason: str  # "timeout" or "execution_failed"
    attempt: int  # 1-indexed attempt that just failed
    delay_ms: float = 0.0
    message: str = ""


TimeoutHandler = Callable[[int, TaskTimeoutError], None]


class RetryTimeoutSupervisor:
    """Arms execution timers and schedules retry backoff."""

    def __init__(self, timer_service: TimerService, retry_config: Optional[RetryConfig] = None) -> None:
        self._timers = timer_service
        self.retry_config = retry_config or RetryConfig()
        self._execution: Dict[int, TimerHandle] = {}
        self._backoff: Dict[int, TimerHandle] = {}
        self._history: Dict[int, List[RetryDecision]] = {}
        self._timeouts_fired = 0

    # ── Execution timers ─────────────────────────────────────────────

    def arm(self, task: Task, on_timeout: TimeoutHandler) -> None:
        """Start the execution timer for *task*, replacing any existing one."""
        self.disarm(task.id)
        task_id = task.id
        timeout_ms = task.execution_timeout_ms

        def _fire() -> None:
            if self._execution.pop(task_id, None) is None:
                return
            self._timeouts_fired += 1
            error = TaskTimeoutError(task_id, timeout_ms)
            logger.warning("%s", error.message)
            on_timeout(task_id, error)

        self._execution[task_id] = self._timers.call_later(timeout_ms / 1000.0, _fire)

    def disarm(self, task_id: int) -> bool:
        handle = self._execution.pop(task_id, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def is_armed(self, task_id: int) -> bool:
        return task_id in self._execution

    @contextmanager
    def armed(self, task_id: int) -> Iterator[None]:
        """Scope that ends with the task's execution timer disarmed,
        whichever way the block exits."""
        try:
            yield
        finally:
            self.disarm(task_id)

    # ── Retry / backoff ──────────────────────────────────────────────

    def backoff_delay_ms(self, retry_count: int) -> float:
        return self.retry_config.get_delay_ms(retry_count)

    def decide(self, task: Task, reason: str) -> RetryDecision:
        """Decide whether the attempt that just failed may be retried.

        The delay is computed from the retry count the task will carry once
        this retry is taken, so the first retry waits ``2 * base``.
        """
        attempt = task.retry_count + 1
        if task.retry_count < task.max_retries:
            decision = RetryDecision(
                task_id=task.id,
                should_retry=True,
                reason=reason,
                attempt=attempt,
                delay_ms=self.backoff_delay_ms(task.retry_count + 1),
                message=f"retry {attempt}/{task.max_retries}",
            )
        else:
            decision = RetryDecision(
                task_id=task.id,
                should_retry=False,
                reason=reason,
                attempt=attempt,
                message=f"retry budget of {task.max_retries} exhausted",
            )
        self._history.setdefault(task.id, []).append(decision)
        return decision

    def schedule_backoff(self, task_id: int, delay_ms: float, callback: Callable[[int], None]) -> None:
        """Call ``callback(task_id)`` once *delay_ms* has elapsed."""
        self.cancel_backoff(task_id)

        def _fire() -> None:
            if self._backoff.pop(task_id, None) is None:
                return
            callback(task_id)

        self._backoff[task_id] = self._timers.call_later(delay_ms / 1000.0, _fire)

    def cancel_backoff(self, task_id: int) -> bool:
        handle = self._backoff.pop(task_id, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def in_backoff(self, task_id: int) -> bool:
        return task_id in self._backoff

    def get_history(self, task_id: int) -> List[RetryDecision]:
        return self._history.get(task_id, [])

    def forget(self, task_id: int) -> None:
        """Drop every timer and the decision history kept for *task_id*."""
        self.disarm(task_id)
        self.cancel_backoff(task_id)
        self._history.pop(task_id, None)

    def close(self) -> None:
        """Cancel every outstanding timer."""
        for handle in list(self._execution.values()) + list(self._backoff.values()):
            handle.cancel()
        self._execution.clear()
        self._backoff.clear()

    @property
    def stats(self) -> Dict[str, Any]:
        decisions = [d for h in self._history.values() for d in h]
        approved = sum(1 for d in decisions if d.should_retry)
        return {
            "armed": len(self._execution),
            "in_backoff": len(self._backoff),
            "timeouts_fired": self._timeouts_fired,
            "tasks_with_retries": len(self._history),
            "retries_approved": approved,
            "retries_denied": len(decisions) - approved,
        }
