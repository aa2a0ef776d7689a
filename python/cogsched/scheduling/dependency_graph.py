"""DAG of task-to-task prerequisite edges.

Standalone module that knows nothing about task records.  Readiness questions
take a ``status_of`` callable so the registry stays the single owner of
lifecycle state.

Provides:
- Cycle rejection by reachability check *before* an edge is inserted
- Readiness (every prerequisite completed)
- Dependents to re-check on completion
- Transitive downstream (BFS) for cascade cancellation
- Execution waves via Kahn's algorithm
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Callable, Dict, FrozenSet, List, Optional, Set

from cogsched.exceptions import DependencyCycleError, TaskNotFoundError, ValidationError
from cogsched.scheduling.models import TaskNode, TaskStatus

logger = logging.getLogger(__name__)

StatusLookup = Callable[[int], Optional[TaskStatus]]


class DependencyGraph:
    """Single adjacency structure for forward and reverse edges.

    Forward edges map a task to the prerequisites it needs; reverse edges map
    a task to the dependents that need it.  Both are only ever mutated
    together, so they cannot drift apart.

    Not thread-safe; owned by one scheduler on one event loop.
    """

    def __init__(self) -> None:
        # task_id → set of task_ids it depends ON
        self._dependencies: Dict[int, Set[int]] = {}
        # task_id → set of task_ids that depend on IT
        self._dependents: Dict[int, Set[int]] = {}

    # ── Graph mutation ───────────────────────────────────────────────

    def add_task(self, task_id: int) -> None:
        """Register a node with no edges.  Idempotent."""
        self._dependencies.setdefault(task_id, set())
        self._dependents.setdefault(task_id, set())

    def add_edge(self, dependent: int, prerequisite: int) -> None:
        """Record that *dependent* needs *prerequisite* to complete first.

        Raises:
            ValidationError: self-edge or unknown node.
            DependencyCycleError: the edge would close a cycle.  The graph is
                left unchanged.
        """
        if dependent == prerequisite:
            raise ValidationError(f"Task {dependent} cannot depend on itself")
        for node in (dependent, prerequisite):
            if node not in self._dependencies:
                raise TaskNotFoundError(node)
        if prerequisite in self._dependencies[dependent]:
            return

        # dependent -> prerequisite closes a cycle iff prerequisite already
        # (transitively) depends on dependent
        path = self._find_path(prerequisite, dependent)
        if path is not None:
            raise DependencyCycleError([dependent] + path)

        self._dependencies[dependent].add(prerequisite)
        self._dependents[prerequisite].add(dependent)
        logger.debug("Edge added: %s depends on %s", dependent, prerequisite)

    def add_edges(self, dependent: int, prerequisites: List[int]) -> None:
        """Add several edges atomically: all of them or none."""
        added: List[int] = []
        try:
            for prereq in prerequisites:
                if prereq in self._dependencies.get(dependent, set()):
                    continue
                self.add_edge(dependent, prereq)
                added.append(prereq)
        except Exception:
            for prereq in added:
                self._dependencies[dependent].discard(prereq)
                self._dependents[prereq].discard(dependent)
            raise

    def remove_task(self, task_id: int) -> Set[int]:
        """Drop a node and all its edges.  Returns its former dependents."""
        if task_id not in self._dependencies:
            return set()
        former = set(self._dependents.get(task_id, set()))
        for dependent in former:
            self._dependencies[dependent].discard(task_id)
        for dep in self._dependencies.get(task_id, set()):
            self._dependents.get(dep, set()).discard(task_id)
        self._dependencies.pop(task_id, None)
        self._dependents.pop(task_id, None)
        return former

    # ── Readiness ────────────────────────────────────────────────────

    def is_ready(self, task_id: int, status_of: StatusLookup) -> bool:
        """True iff every prerequisite of *task_id* is COMPLETED."""
        return all(
            status_of(dep) == TaskStatus.COMPLETED
            for dep in self._dependencies.get(task_id, set())
        )

    def unsatisfied(self, task_id: int, status_of: StatusLookup) -> Set[int]:
        """Prerequisites of *task_id* that have not completed."""
        return {
            dep for dep in self._dependencies.get(task_id, set())
            if status_of(dep) != TaskStatus.COMPLETED
        }

    def on_completed(self, task_id: int) -> List[int]:
        """Dependents to re-evaluate now that *task_id* completed (sorted)."""
        return sorted(self._dependents.get(task_id, set()))

    # ── Queries ──────────────────────────────────────────────────────

    def dependencies_of(self, task_id: int) -> FrozenSet[int]:
        return frozenset(self._dependencies.get(task_id, set()))

    def dependents_of(self, task_id: int) -> FrozenSet[int]:
        return frozenset(self._dependents.get(task_id, set()))

    def get_downstream(self, task_id: int) -> Set[int]:
        """BFS to find all transitive dependents of *task_id*."""
        result: Set[int] = set()
        queue: deque[int] = deque(self._dependents.get(task_id, set()))
        while queue:
            nid = queue.popleft()
            if nid in result:
                continue
            result.add(nid)
            queue.extend(self._dependents.get(nid, set()))
        return result

    def get_execution_waves(self, include: Optional[Set[int]] = None) -> List[List[int]]:
        """Kahn's algorithm producing parallel execution waves.

        Each wave contains tasks whose prerequisites all sit in earlier
        waves.  *include* restricts the computation to a subset of nodes
        (edges to nodes outside it are ignored).
        """
        nodes = set(self._dependencies) if include is None else set(include) & set(self._dependencies)
        in_degree: Dict[int, int] = {
            tid: len(self._dependencies[tid] & nodes) for tid in nodes
        }
        current_wave = sorted(tid for tid, deg in in_degree.items() if deg == 0)
        waves: List[List[int]] = []

        while current_wave:
            waves.append(current_wave)
            next_wave: List[int] = []
            for tid in current_wave:
                for dep_id in self._dependents.get(tid, set()):
                    if dep_id not in in_degree:
                        continue
                    in_degree[dep_id] -= 1
                    if in_degree[dep_id] == 0:
                        next_wave.append(dep_id)
            current_wave = sorted(next_wave)

        return waves

    def node(
        self,
        task_id: int,
        status: Optional[TaskStatus] = None,
        status_of: Optional[StatusLookup] = None,
    ) -> TaskNode:
        """Return an immutable snapshot of the task's graph position.

        With *status_of*, the snapshot also lists the prerequisites that have
        not completed yet.
        """
        if task_id not in self._dependencies:
            raise TaskNotFoundError(task_id)
        return TaskNode(
            task_id=task_id,
            status=status,
            dependencies=self.dependencies_of(task_id),
            dependents=self.dependents_of(task_id),
            waiting_on=frozenset(self.unsatisfied(task_id, status_of)) if status_of else frozenset(),
        )

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._dependencies

    def __len__(self) -> int:
        return len(self._dependencies)

    @property
    def edge_count(self) -> int:
        return sum(len(deps) for deps in self._dependencies.values())

    # ── Internal helpers ─────────────────────────────────────────────

    def _find_path(self, start: int, target: int) -> Optional[List[int]]:
        """Return a path from *start* to *target* following prerequisite
        edges, or ``None`` if no path exists."""
        visited: Set[int] = set()
        stack: List[tuple[int, List[int]]] = [(start, [start])]
        while stack:
            node, path = stack.pop()
            if node == target:
                return path
            if node in visited:
                continue
            visited.add(node)
            for dep in self._dependencies.get(node, set()):
                stack.append((dep, path + [dep]))
        return None
