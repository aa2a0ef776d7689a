"""Holds condition-gated tasks until external state satisfies them."""

from __future__ import annotations

import logging
from typing import Dict, FrozenSet, Iterable, List

from cogsched.exceptions import ConditionEvaluationError
from cogsched.scheduling.conditions import ConditionEvaluator
from cogsched.scheduling.dependency_graph import DependencyGraph
from cogsched.scheduling.models import Task, TaskStatus
from cogsched.scheduling.task_registry import TaskRegistry

logger = logging.getLogger(__name__)


class DeferredActivationManager:
    """Re-evaluates deferred tasks whenever the satisfied label set changes.

    A task is activated (moved to READY) only when its condition is true and
    all of its dependencies have completed.  Anything else leaves it deferred;
    there is no expiry.
    """

    def __init__(
        self,
        registry: TaskRegistry,
        graph: DependencyGraph,
        evaluator: ConditionEvaluator,
    ) -> None:
        self._registry = registry
        self._graph = graph
        self._evaluator = evaluator
        # Insertion-ordered set
        self._deferred: Dict[int, bool] = {}

    def add_deferred(self, task: Task) -> None:
        if task.status != TaskStatus.DEFERRED:
            self._registry.transition(task.id, TaskStatus.DEFERRED, "condition_unmet")
        self._deferred[task.id] = True

    def remove(self, task_id: int) -> bool:
        return self._deferred.pop(task_id, False)

    def deferred_ids(self) -> List[int]:
        return list(self._deferred)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._deferred

    def __len__(self) -> int:
        return len(self._deferred)

    def on_external_state_change(self, satisfied: Iterable[str]) -> List[int]:
        """Promote every deferred task whose gate is now open.

        Returns the activated ids in the order they were deferred.
        """
        labels: FrozenSet[str] = frozenset(satisfied)
        activated: List[int] = []

        for task_id in list(self._deferred):
            task = self._registry.get(task_id)
            try:
                condition_met = task.condition is None or self._evaluator.evaluate(
                    task.condition, labels, task_id=task_id,
                )
            except ConditionEvaluationError as exc:
                logger.warning("Condition for deferred task %s is malformed: %s", task_id, exc)
                task.status_reason = str(exc)
                continue

            if not condition_met:
                continue
            if not self._graph.is_ready(task_id, self._registry.status_of):
                logger.debug("Task %s condition met, waiting on dependencies", task_id)
                continue

            del self._deferred[task_id]
            self._registry.transition(task_id, TaskStatus.READY, "activated")
            activated.append(task_id)

        if activated:
            logger.info("Activated %d deferred task(s): %s", len(activated), activated)
        return activated
