"""Scheduler: the single entry point for task lifecycle operations.

Ties the components together:
- ``TaskRegistry`` owns task records and status
- ``DependencyGraph`` owns prerequisite edges
- ``PriorityCalculator`` ranks READY tasks at every dispatch
- ``ConditionEvaluator`` / ``DeferredActivationManager`` gate on external state
- ``RetryTimeoutSupervisor`` owns timers and retry decisions

Every public method is synchronous and runs to completion before returning,
so on a single event loop no two transitions interleave.  Status changes are
collected in an outbox and handed out through ``drain_events()``; the runtime
publishes them on the event bus.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional

from cogsched.enhanced_logging import track_performance
from cogsched.exceptions import (
    InvalidTransitionError,
    RetryExhaustedError,
    TaskTimeoutError,
    ValidationError,
)
from cogsched.interfaces.event_bus import EventType
from cogsched.interfaces.state_snapshot import StateSnapshot
from cogsched.scheduling.conditions import ConditionEvaluator, parse_condition
from cogsched.scheduling.deferred_activation import DeferredActivationManager
from cogsched.scheduling.dependency_graph import DependencyGraph
from cogsched.scheduling.models import (
    CANCELLED_REASON,
    PriorityFactors,
    SchedulerEvent,
    Task,
    TaskNode,
    TaskStatus,
    TaskSubmission,
    TaskTransition,
)
from cogsched.scheduling.priority import PriorityCalculator, parse_priority_expression
from cogsched.scheduling.retry_supervisor import RetryTimeoutSupervisor
from cogsched.scheduling.task_registry import TaskRegistry

logger = logging.getLogger(__name__)

TIMEOUT_REASON = "timeout"
EXECUTION_FAILED_REASON = "execution_failed"
RETRIES_EXHAUSTED_REASON = "retries_exhausted"


# ── Concurrency limiter ──────────────────────────────────────────────


class ConcurrencySlot:
    """Counting limiter on RUNNING tasks.

    ``acquire()`` returns False when every slot is taken (backpressure).
    """

    def __init__(self, name: str = "scheduler", max_concurrent: int = 4) -> None:
        self.name = name
        self.max_concurrent = max_concurrent
        self._active: int = 0
        self._total_acquired: int = 0
        self._total_rejected: int = 0

    def acquire(self) -> bool:
        if self._active < self.max_concurrent:
            self._active += 1
            self._total_acquired += 1
            return True
        self._total_rejected += 1
        return False

    def release(self) -> None:
        self._active = max(0, self._active - 1)

    @property
    def active(self) -> int:
        return self._active

    @property
    def available(self) -> int:
        return max(0, self.max_concurrent - self._active)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "max_concurrent": self.max_concurrent,
            "active": self._active,
            "available": self.available,
            "total_acquired": self._total_acquired,
            "total_rejected": self._total_rejected,
        }


# ── Scheduler ────────────────────────────────────────────────────────


class Scheduler:
    """Priority-ordered, dependency- and condition-gated task dispatcher."""

    def __init__(
        self,
        registry: TaskRegistry,
        graph: DependencyGraph,
        calculator: PriorityCalculator,
        evaluator: ConditionEvaluator,
        deferred: DeferredActivationManager,
        supervisor: RetryTimeoutSupervisor,
        state: Optional[StateSnapshot] = None,
        max_concurrent_tasks: int = 4,
        default_max_retries: int = 3,
        default_execution_timeout_ms: int = 30000,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._registry = registry
        self._graph = graph
        self._calculator = calculator
        self._evaluator = evaluator
        self._deferred = deferred
        self._supervisor = supervisor
        self._state = state
        # Last label set handed to on_external_state_change; merged with the snapshot
        self._reported: FrozenSet[str] = frozenset()
        self._slot = ConcurrencySlot("scheduler", max_concurrent_tasks)
        self._default_max_retries = default_max_retries
        self._default_timeout_ms = default_execution_timeout_ms
        self._clock = clock or time.time
        self._events: List[SchedulerEvent] = []
        self._listener: Optional[Callable[[], None]] = None

    # ── Submission ───────────────────────────────────────────────────

    @track_performance
    def submit(self, message: Any) -> int:
        """Validate and store a new task; return its id.

        Raises:
            ValidationError: malformed message, duplicate id, unknown
                dependency or bad priority expression.
            ConditionEvaluationError: malformed condition.
            DependencyCycleError: the dependencies would close a cycle.

        Nothing is stored when an error is raised.
        """
        sub = TaskSubmission.parse(message)
        task_id = sub.id if sub.id is not None else self._registry.next_id()
        if task_id in self._registry:
            raise ValidationError(f"Task {task_id} already exists", details={"task_id": task_id})

        missing = [dep for dep in sub.dependencies if dep not in self._registry]
        if missing:
            raise ValidationError(
                f"Task {task_id} depends on unknown task(s) {missing}",
                details={"task_id": task_id, "missing": missing},
            )

        condition = None
        if sub.condition is not None:
            condition = parse_condition(sub.condition)
            self._evaluator.validate(condition)

        if sub.user_priority_expression is not None:
            user_priority = parse_priority_expression(sub.user_priority_expression)
        else:
            user_priority = sub.user_priority or 0.0

        task = Task(
            id=task_id,
            query=sub.query,
            factors=PriorityFactors(
                user_priority=user_priority,
                urgency=sub.urgency,
                resource_availability=sub.resource_availability,
                system_load=sub.system_load,
                resource_cost=sub.resource_cost,
                inherited_priority_boost=sub.inherited_priority_boost,
                is_system_critical=sub.is_system_critical,
            ),
            created_at=sub.created_at if sub.created_at is not None else self._clock(),
            category=sub.category,
            condition=condition,
            max_retries=sub.max_retries if sub.max_retries is not None else self._default_max_retries,
            execution_timeout_ms=(
                sub.execution_timeout_ms if sub.execution_timeout_ms is not None
                else self._default_timeout_ms
            ),
            log_priority=sub.log_priority,
        )

        self._graph.add_task(task_id)
        try:
            self._graph.add_edges(task_id, sub.dependencies)
        except Exception:
            self._graph.remove_task(task_id)
            raise

        self._registry.submit(task)
        self._place(task)
        self._flush()
        logger.info("Submitted task %s (%s)", task_id, task.status.value)
        return task_id

    # ── Dispatch ─────────────────────────────────────────────────────

    @track_performance
    def schedule_next_task(self, category: Optional[str] = None) -> Optional[Task]:
        """Move the best READY task to RUNNING and arm its timer.

        *category* restricts the pick to that category.  Returns None when
        nothing eligible is ready or every slot is taken.
        """
        batch = self.schedule_batch(1, None if category is None else [category])
        return batch[0] if batch else None

    def schedule_batch(self, count: int, categories: Optional[Iterable[str]] = None) -> List[Task]:
        """Dispatch up to *count* READY tasks in priority order.

        Stops early when the concurrency slots run out.  *categories*, when
        given, restricts the pick to tasks in those categories.
        """
        if count < 1:
            raise ValidationError(f"Batch size must be at least 1, got {count}", details={"count": count})
        dispatched: List[Task] = []
        now = self._clock()
        for task in self._ranked_ready(categories, now):
            if len(dispatched) >= count or self._slot.available == 0:
                break
            self._slot.acquire()
            task.last_execution_attempt = now
            self._registry.transition(task.id, TaskStatus.RUNNING)
            self._supervisor.arm(task, self._on_timeout)
            dispatched.append(task)
            logger.info("Dispatching task %s (attempt %d)", task.id, task.retry_count + 1)
        self._flush()
        return dispatched

    def ready_queue(self, category: Optional[str] = None) -> List[Task]:
        """READY tasks in dispatch order, as of now."""
        return self._ranked_ready(None if category is None else [category], self._clock())

    # ── Outcome reporting ────────────────────────────────────────────

    @track_performance
    def report_completion(self, task_id: int, result: Any = None) -> Task:
        task = self._require_running(task_id, TaskStatus.COMPLETED)
        with self._supervisor.armed(task_id):
            task.result = result
            self._registry.transition(task_id, TaskStatus.COMPLETED)
            self._slot.release()

        for dependent in self._graph.on_completed(task_id):
            self._unblock(dependent)
        self._deferred.on_external_state_change(self._labels())
        self._flush()
        logger.info("Task %s completed", task_id)
        return task

    @track_performance
    def report_failure(self, task_id: int, reason: str = "") -> Task:
        """Record a failed execution attempt.

        ``"cancelled"`` fails the task outright; any other reason consumes
        one unit of the retry budget, exactly like a timeout.
        """
        if reason == CANCELLED_REASON:
            self.cancel(task_id)
            return self._registry.get(task_id)

        task = self._require_running(task_id, TaskStatus.FAILED)
        with self._supervisor.armed(task_id):
            self._retry_or_fail(task, EXECUTION_FAILED_REASON, reason or EXECUTION_FAILED_REASON)
        self._flush()
        return task

    def cancel(self, task_id: int, cascade: bool = False) -> List[int]:
        """Fail a task (and optionally all transitive dependents) as cancelled.

        Tasks already terminal are skipped.  Returns the ids actually
        cancelled, root first.
        """
        self._registry.get(task_id)
        targets = [task_id]
        if cascade:
            targets.extend(sorted(self._graph.get_downstream(task_id)))

        cancelled: List[int] = []
        for tid in targets:
            task = self._registry.get(tid)
            if task.is_terminal:
                continue
            if task.status == TaskStatus.RUNNING:
                self._supervisor.disarm(tid)
                self._slot.release()
            self._deferred.remove(tid)
            self._supervisor.cancel_backoff(tid)
            task.last_error = CANCELLED_REASON
            self._registry.transition(tid, TaskStatus.FAILED, CANCELLED_REASON)
            cancelled.append(tid)

        self._flush()
        if cancelled:
            logger.info("Cancelled task(s) %s", cancelled)
        return cancelled

    # ── External state ───────────────────────────────────────────────

    def on_external_state_change(self, satisfied: Optional[Iterable[str]] = None) -> List[int]:
        """Re-check deferred tasks.  Returns the ids promoted to READY.

        *satisfied* is the caller's complete current label set.  It replaces
        the previously reported set and, together with the injected
        snapshot, gates every later readiness check too, so a task whose
        condition was reported true still activates once its dependencies
        complete.
        """
        if satisfied is not None:
            self._reported = frozenset(satisfied)
        activated = self._deferred.on_external_state_change(self._labels())
        self._flush()
        return activated

    # ── Graph edits ──────────────────────────────────────────────────

    def add_dependency(self, dependent: int, prerequisite: int) -> None:
        """Add an edge between two existing tasks.

        Only a PENDING or DEFERRED dependent may gain an unfinished
        prerequisite; anything already READY or beyond would be retroactively
        blocked.
        """
        dep_task = self._registry.get(dependent)
        prereq_task = self._registry.get(prerequisite)
        if (
            dep_task.status not in (TaskStatus.PENDING, TaskStatus.DEFERRED)
            and prereq_task.status != TaskStatus.COMPLETED
        ):
            raise ValidationError(
                f"Task {dependent} is {dep_task.status.value}; it cannot gain "
                f"unfinished prerequisite {prerequisite}",
                details={"dependent": dependent, "prerequisite": prerequisite},
            )
        self._graph.add_edge(dependent, prerequisite)

    # ── Introspection ────────────────────────────────────────────────

    def get_task(self, task_id: int) -> Task:
        return self._registry.get(task_id)

    def describe(self, task_id: int) -> TaskNode:
        """Graph position of a task, including prerequisites still unmet."""
        status = self._registry.get(task_id).status
        return self._graph.node(task_id, status, self._registry.status_of)

    def execution_plan(self) -> List[List[int]]:
        """Unfinished tasks grouped into waves.

        Every task in a wave waits only on tasks in earlier waves; edges to
        completed or failed tasks are ignored.
        """
        unfinished = {task.id for task in self._registry if not task.is_terminal}
        return self._graph.get_execution_waves(include=unfinished)

    # ── Eviction ─────────────────────────────────────────────────────

    def clear_completed_tasks(self, include_failed: bool = False) -> List[int]:
        """Drop finished tasks from the registry, the graph and the
        supervisor.  Returns the evicted ids.

        COMPLETED tasks always go.  FAILED tasks go only with
        *include_failed*, and only when no unfinished task depends on them:
        removing the edge would otherwise make the dependent look ready.
        Evicted ids are unknown afterwards, so later submissions cannot
        depend on them.
        """
        evicted: List[int] = []
        for task in self._registry:
            if task.status == TaskStatus.FAILED:
                if not include_failed or self._has_unfinished_dependents(task.id):
                    continue
            elif task.status != TaskStatus.COMPLETED:
                continue
            self._registry.remove(task.id)
            self._graph.remove_task(task.id)
            self._supervisor.forget(task.id)
            self._deferred.remove(task.id)
            evicted.append(task.id)

        if evicted:
            logger.info("Cleared %d finished task(s)", len(evicted))
        return evicted

    @property
    def running_count(self) -> int:
        return self._slot.active

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "tasks": self._registry.stats,
            "deferred": len(self._deferred),
            "concurrency": self._slot.to_dict(),
            "retries": self._supervisor.stats,
            "edges": self._graph.edge_count,
        }

    def drain_events(self) -> List[SchedulerEvent]:
        drained, self._events = self._events, []
        return drained

    def set_event_listener(self, listener: Optional[Callable[[], None]]) -> None:
        """Callback invoked when timers (not callers) produced new events."""
        self._listener = listener

    def close(self) -> None:
        self._supervisor.close()

    # ── Internal: placement ──────────────────────────────────────────

    def _labels(self) -> FrozenSet[str]:
        if self._state is None:
            return self._reported
        return self._reported | self._state.satisfied_labels()

    def _condition_met(self, task: Task) -> bool:
        if task.condition is None:
            return True
        return self._evaluator.evaluate(task.condition, self._labels(), task_id=task.id)

    def _place(self, task: Task) -> None:
        """Route a freshly submitted task to DEFERRED, READY or PENDING."""
        if not self._condition_met(task):
            self._deferred.add_deferred(task)
        elif self._graph.is_ready(task.id, self._registry.status_of):
            self._registry.transition(task.id, TaskStatus.READY)

    def _gate(self, task: Task, ready_reason: str) -> None:
        """Move a PENDING task on once every prerequisite has completed:
        READY if its condition holds, DEFERRED otherwise."""
        if not self._graph.is_ready(task.id, self._registry.status_of):
            return
        if self._condition_met(task):
            self._registry.transition(task.id, TaskStatus.READY, ready_reason)
        else:
            self._deferred.add_deferred(task)

    def _unblock(self, task_id: int) -> None:
        task = self._registry.get(task_id)
        if task.status != TaskStatus.PENDING or self._supervisor.in_backoff(task_id):
            return
        self._gate(task, "dependencies_met")

    def _has_unfinished_dependents(self, task_id: int) -> bool:
        for dependent in self._graph.dependents_of(task_id):
            waiting = self._registry.find(dependent)
            if waiting is not None and not waiting.is_terminal:
                return True
        return False

    def _ranked_ready(self, categories: Optional[Iterable[str]], now: float) -> List[Task]:
        wanted = None if categories is None else set(categories)
        ready = [
            task for task in self._registry.list_by_status(TaskStatus.READY)
            if wanted is None or task.category in wanted
        ]
        boosts = self._calculator.inherited_boosts(ready, self._graph, self._registry.find)
        return self._calculator.rank(ready, now, boosts)

    def _require_running(self, task_id: int, target: TaskStatus) -> Task:
        task = self._registry.get(task_id)
        if task.status != TaskStatus.RUNNING:
            raise InvalidTransitionError(task_id, task.status.value, target.value)
        return task

    # ── Internal: retry ──────────────────────────────────────────────

    def _retry_or_fail(self, task: Task, reason: str, error_message: str) -> None:
        decision = self._supervisor.decide(task, reason)
        self._slot.release()
        if decision.should_retry:
            task.retry_count += 1
            task.last_error = error_message
            self._registry.transition(task.id, TaskStatus.PENDING, reason)
            self._supervisor.schedule_backoff(task.id, decision.delay_ms, self._reinsert)
            logger.info(
                "Task %s %s; retry %d/%d in %.0fms",
                task.id, reason, task.retry_count, task.max_retries, decision.delay_ms,
            )
        else:
            exhausted = RetryExhaustedError(task.id, decision.attempt, error_message)
            task.last_error = exhausted.message
            self._registry.transition(task.id, TaskStatus.FAILED, RETRIES_EXHAUSTED_REASON)
            logger.warning("%s", exhausted.message)

    def _on_timeout(self, task_id: int, error: TaskTimeoutError) -> None:
        task = self._registry.get(task_id)
        if task.status != TaskStatus.RUNNING:
            return
        self._retry_or_fail(task, TIMEOUT_REASON, error.message)
        self._flush()
        self._notify()

    def _reinsert(self, task_id: int) -> None:
        """Backoff elapsed: send the task back through the readiness gate.

        Prerequisites added during the backoff keep it PENDING (it is
        unblocked when they complete); a condition retracted meanwhile
        defers it.
        """
        task = self._registry.get(task_id)
        if task.status != TaskStatus.PENDING:
            return
        self._gate(task, "retry")
        self._flush()
        self._notify()

    def _notify(self) -> None:
        if self._listener is not None:
            self._listener()

    # ── Internal: events ─────────────────────────────────────────────

    def _flush(self) -> None:
        for tr in self._registry.drain_transitions():
            event = self._to_event(tr)
            if event is not None:
                self._events.append(event)

    def _to_event(self, tr: TaskTransition) -> Optional[SchedulerEvent]:
        task = self._registry.get(tr.task_id)
        data: Dict[str, Any] = {"task_id": tr.task_id}

        if tr.old_status is None:
            return SchedulerEvent(EventType.TASK_SUBMITTED, {**data, "query": task.query})
        if tr.new_status == TaskStatus.DEFERRED:
            return SchedulerEvent(EventType.TASK_DEFERRED, data)
        if tr.new_status == TaskStatus.READY:
            if tr.old_status == TaskStatus.DEFERRED:
                return SchedulerEvent(EventType.TASK_ACTIVATED, data)
            return SchedulerEvent(EventType.TASK_READY, {**data, "reason": tr.reason})
        if tr.new_status == TaskStatus.RUNNING:
            return SchedulerEvent(EventType.TASK_STARTED, {
                **data, "query": task.query, "attempt": task.retry_count + 1,
            })
        if tr.new_status == TaskStatus.PENDING:
            history = self._supervisor.get_history(tr.task_id)
            delay = history[-1].delay_ms if history else 0.0
            return SchedulerEvent(EventType.TASK_RETRY_SCHEDULED, {
                **data, "reason": tr.reason, "retry_count": task.retry_count, "delay_ms": delay,
            })
        if tr.new_status == TaskStatus.COMPLETED:
            return SchedulerEvent(EventType.TASK_COMPLETED, {**data, "result": task.result})
        if tr.new_status == TaskStatus.FAILED:
            return SchedulerEvent(EventType.TASK_FAILED, {
                **data, "error": task.last_error or tr.reason, "reason": tr.reason,
            })
        return None

