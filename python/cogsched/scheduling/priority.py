"""Deterministic multi-factor priority scoring.

score = user_priority * W_u
      + urgency * W_g
      + (1 - system_load) * resource_availability * W_r
      - resource_cost * W_c
      + inherited boost (submitted + derived from waiting dependents, capped)
      + age_bonus(now - created_at)
      - failure_penalty * retry_count (capped)
      [+ stalled_boost when the last attempt is older than the threshold]
      [+ critical_boost when is_system_critical]

The age bonus grows quadratically up to ``age_horizon`` and is flat
afterwards, so an older task gains on a newer one until both saturate.
``critical_boost`` exceeds the full range of non-critical scores, so a
critical task always outranks a non-critical one.

Priority inheritance: a task that other unfinished tasks wait on picks up
part of the gap between their base score and its own, so a low-priority
prerequisite does not hold a high-priority dependent back.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from cogsched.exceptions import ValidationError
from cogsched.scheduling.dependency_graph import DependencyGraph
from cogsched.scheduling.models import Task

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
TaskLookup = Callable[[int], Optional[Task]]

# Input bounds used to derive the critical boost
_MAX_USER_PRIORITY = 100.0
_MAX_URGENCY = 100.0
_MAX_RESOURCE_COST = 100.0
_MAX_INHERITED_BOOST = 100.0
_MAX_PENALISED_RETRIES = 10

PRIORITY_LEVELS: Dict[str, int] = {
    "CRITICAL": 10,
    "HIGH": 8,
    "MEDIUM": 5,
    "LOW": 3,
    "LOWEST": 1,
}

_EXPRESSION_RE = re.compile(r"^\s*([A-Za-z]+)\s*(?:([+-])\s*(\d+))?\s*$")


@dataclass(frozen=True)
class PriorityWeights:
    """Tunable coefficients of the score."""

    user: float = 2.0
    urgency: float = 1.5
    resource: float = 0.8
    cost: float = 0.5
    max_age_bonus: float = 100.0
    age_horizon_seconds: float = 3600.0
    failure_penalty: float = 10.0
    stalled_boost: float = 20.0
    stalled_threshold_seconds: float = 300.0
    inheritance_direct: float = 1.0
    inheritance_transitive: float = 0.6

    @classmethod
    def from_settings(cls, settings) -> "PriorityWeights":
        return cls(
            user=settings.priority_weight_user,
            urgency=settings.priority_weight_urgency,
            resource=settings.priority_weight_resource,
            cost=settings.priority_weight_cost,
            max_age_bonus=settings.max_age_bonus,
            age_horizon_seconds=settings.age_horizon_seconds,
            failure_penalty=settings.priority_failure_penalty,
            stalled_boost=settings.priority_stalled_boost,
            stalled_threshold_seconds=settings.stalled_threshold_seconds,
            inheritance_direct=settings.priority_inheritance_direct,
            inheritance_transitive=settings.priority_inheritance_transitive,
        )

    @property
    def critical_boost(self) -> float:
        """One more than the spread between the best and worst non-critical
        scores."""
        best = (
            _MAX_USER_PRIORITY * self.user
            + _MAX_URGENCY * self.urgency
            + self.resource
            + _MAX_INHERITED_BOOST
            + self.max_age_bonus
            + self.stalled_boost
        )
        worst = -_MAX_RESOURCE_COST * self.cost - _MAX_PENALISED_RETRIES * self.failure_penalty
        return (best - worst) + 1.0


class PriorityCalculator:
    """Pure scoring function over a task's factors and the current time."""

    def __init__(self, weights: Optional[PriorityWeights] = None, clock: Optional[Clock] = None) -> None:
        self.weights = weights or PriorityWeights()
        self._clock = clock or time.time
        self._critical_boost = self.weights.critical_boost

    @property
    def critical_boost(self) -> float:
        return self._critical_boost

    def age_bonus(self, age_seconds: float) -> float:
        if age_seconds <= 0:
            return 0.0
        ratio = min(1.0, age_seconds / self.weights.age_horizon_seconds)
        return self.weights.max_age_bonus * ratio * ratio

    def base_score(self, task: Task) -> float:
        """The time-independent part of the score: user, urgency, resources
        and cost.  Inheritance compares tasks on this."""
        f = task.factors
        w = self.weights
        return (
            f.user_priority * w.user
            + f.urgency * w.urgency
            + (1.0 - f.system_load) * f.resource_availability * w.resource
            - f.resource_cost * w.cost
        )

    def is_stalled(self, task: Task, now: float) -> bool:
        """True when the task's last dispatch is older than the threshold."""
        if task.last_execution_attempt is None:
            return False
        return now - task.last_execution_attempt > self.weights.stalled_threshold_seconds

    def breakdown(self, task: Task, now: Optional[float] = None, inherited: float = 0.0) -> Dict[str, float]:
        """Per-component contributions to the score.

        *inherited* is the graph-derived boost from ``inherited_boosts``; it
        is added to the submitted boost and the sum is capped.
        """
        now = self._clock() if now is None else now
        f = task.factors
        w = self.weights
        parts = {
            "user_priority": f.user_priority * w.user,
            "urgency": f.urgency * w.urgency,
            "resources": (1.0 - f.system_load) * f.resource_availability * w.resource,
            "cost": -f.resource_cost * w.cost,
            "inherited": min(_MAX_INHERITED_BOOST, f.inherited_priority_boost + max(0.0, inherited)),
            "age": self.age_bonus(now - task.created_at),
            "failure": -w.failure_penalty * min(task.retry_count, _MAX_PENALISED_RETRIES),
            "stalled": w.stalled_boost if self.is_stalled(task, now) else 0.0,
            "critical": self._critical_boost if f.is_system_critical else 0.0,
        }
        parts["total"] = sum(parts.values())
        return parts

    def score(self, task: Task, now: Optional[float] = None, inherited: float = 0.0) -> float:
        parts = self.breakdown(task, now, inherited)
        if task.log_priority:
            logger.debug(
                "Priority for task %s: user=%.2f urgency=%.2f resources=%.2f cost=%.2f "
                "inherited=%.2f age=%.2f failure=%.2f stalled=%.2f critical=%.2f total=%.2f",
                task.id, parts["user_priority"], parts["urgency"], parts["resources"],
                parts["cost"], parts["inherited"], parts["age"], parts["failure"],
                parts["stalled"], parts["critical"], parts["total"],
            )
        return parts["total"]

    def sort_key(self, task: Task, now: Optional[float] = None, inherited: float = 0.0) -> Tuple[float, float, int]:
        """Ascending key: higher score, then earlier creation, then lower id."""
        return (-self.score(task, now, inherited), task.created_at, task.id)

    def rank(
        self,
        tasks: Iterable[Task],
        now: Optional[float] = None,
        inherited: Optional[Mapping[int, float]] = None,
    ) -> List[Task]:
        now = self._clock() if now is None else now
        boosts = inherited or {}
        return sorted(tasks, key=lambda t: self.sort_key(t, now, boosts.get(t.id, 0.0)))

    def inherited_boosts(
        self,
        tasks: Iterable[Task],
        graph: DependencyGraph,
        lookup: TaskLookup,
    ) -> Dict[int, float]:
        """Boost each task by the unfinished tasks waiting on it.

        A direct dependent contributes ``inheritance_direct`` times the gap
        between its base score and the task's; a transitive one contributes
        ``inheritance_transitive`` times that gap.  The largest contribution
        wins.  Tasks nobody outranks are left out of the result.
        """
        w = self.weights
        boosts: Dict[int, float] = {}
        for task in tasks:
            own = self.base_score(task)
            direct = graph.dependents_of(task.id)
            best = 0.0
            for waiting_id in graph.get_downstream(task.id):
                waiting = lookup(waiting_id)
                if waiting is None or waiting.is_terminal:
                    continue
                factor = w.inheritance_direct if waiting_id in direct else w.inheritance_transitive
                best = max(best, (self.base_score(waiting) - own) * factor)
            if best > 0:
                boosts[task.id] = best
        return boosts


def parse_priority_expression(expression: str) -> float:
    """Translate ``"HIGH"``, ``"MEDIUM-2"``, ``"low + 1"`` to a 0–100 priority.

    Levels sit on a 0–10 scale, the offset is applied and clamped to that
    scale, and the result is multiplied by 10.
    """
    if not isinstance(expression, str):
        raise ValidationError(f"Priority expression must be a string, got {type(expression).__name__}")
    match = _EXPRESSION_RE.match(expression)
    if not match:
        raise ValidationError(f"Malformed priority expression {expression!r}")
    level, sign, amount = match.groups()
    base = PRIORITY_LEVELS.get(level.upper())
    if base is None:
        raise ValidationError(
            f"Unknown priority level {level!r}; expected one of {sorted(PRIORITY_LEVELS)}"
        )
    value = base
    if sign:
        value = base + int(amount) if sign == "+" else base - int(amount)
    return float(max(0, min(10, value)) * 10)
