"""Task scheduling: priority, dependencies, conditions, retries."""

from cogsched.scheduling.conditions import (
    And,
    ConditionEvaluator,
    ConditionExpression,
    Leaf,
    Not,
    Or,
    Threshold,
    condition_to_dict,
    parse_condition,
)
from cogsched.scheduling.deferred_activation import DeferredActivationManager
from cogsched.scheduling.dependency_graph import DependencyGraph
from cogsched.scheduling.models import (
    PriorityFactors,
    SchedulerEvent,
    Task,
    TaskNode,
    TaskStatus,
    TaskSubmission,
    TaskTransition,
)
from cogsched.scheduling.priority import (
    PriorityCalculator,
    PriorityWeights,
    parse_priority_expression,
)
from cogsched.scheduling.retry_supervisor import (
    AsyncioTimerService,
    RetryDecision,
    RetryTimeoutSupervisor,
    TimerService,
)
from cogsched.scheduling.scheduler import ConcurrencySlot, Scheduler
from cogsched.scheduling.task_registry import TaskRegistry

__all__ = [
    "And",
    "AsyncioTimerService",
    "ConcurrencySlot",
    "ConditionEvaluator",
    "ConditionExpression",
    "DeferredActivationManager",
    "DependencyGraph",
    "Leaf",
    "Not",
    "Or",
    "PriorityCalculator",
    "PriorityFactors",
    "PriorityWeights",
    "RetryDecision",
    "RetryTimeoutSupervisor",
    "Scheduler",
    "SchedulerEvent",
    "Task",
    "TaskNode",
    "TaskRegistry",
    "TaskStatus",
    "TaskSubmission",
    "TaskTransition",
    "Threshold",
    "TimerService",
    "condition_to_dict",
    "parse_condition",
    "parse_priority_expression",
]
