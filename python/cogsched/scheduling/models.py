"""Task data model and submission schema.

``TaskSubmission`` is the validated wire form (pydantic); ``Task`` is the
mutable record the registry owns for the task's whole lifetime.  Dependency
edges are deliberately absent from ``Task``: they live in the
``DependencyGraph`` and are exposed through the immutable ``TaskNode``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from cogsched.exceptions import ValidationError
from cogsched.interfaces.event_bus import EventType
from cogsched.scheduling.conditions import ConditionExpression, condition_to_dict


# ── Enums / value objects ────────────────────────────────────────────


class TaskStatus(str, Enum):
    """Lifecycle states of a task."""

    PENDING = "pending"  # waiting on unsatisfied deps, or on retry backoff
    DEFERRED = "deferred"  # waiting on an unsatisfied condition
    READY = "ready"  # eligible for dispatch
    RUNNING = "running"  # dispatched, timer armed
    COMPLETED = "completed"  # terminal
    FAILED = "failed"  # terminal


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})

ALLOWED_TRANSITIONS: Dict[TaskStatus, FrozenSet[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.DEFERRED, TaskStatus.READY, TaskStatus.FAILED}),
    TaskStatus.DEFERRED: frozenset({TaskStatus.READY, TaskStatus.FAILED}),
    TaskStatus.READY: frozenset({TaskStatus.RUNNING, TaskStatus.FAILED}),
    TaskStatus.RUNNING: frozenset({TaskStatus.COMPLETED, TaskStatus.PENDING, TaskStatus.FAILED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
}

CANCELLED_REASON = "cancelled"


@dataclass
class PriorityFactors:
    """Scalar inputs to the priority score."""

    user_priority: float = 0.0  # 0 – 100
    urgency: float = 0.0  # 0 – 100
    resource_availability: float = 1.0  # 0 – 1
    system_load: float = 0.0  # 0 – 1
    resource_cost: float = 0.0  # 0 – 100
    inherited_priority_boost: float = 0.0  # 0 – 100
    is_system_critical: bool = False


@dataclass
class Task:
    """A schedulable unit of work.  Mutated only through the registry."""

    id: int
    query: str
    factors: PriorityFactors = field(default_factory=PriorityFactors)
    created_at: float = 0.0
    category: str = "default"
    condition: Optional[ConditionExpression] = None
    status: TaskStatus = TaskStatus.PENDING

    # Retry / timeout
    retry_count: int = 0
    max_retries: int = 3
    execution_timeout_ms: int = 30000
    last_execution_attempt: Optional[float] = None

    # Status bookkeeping
    status_updated_at: float = 0.0
    status_reason: Optional[str] = None
    result: Any = None
    last_error: Optional[str] = None

    log_priority: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "query": self.query,
            "status": self.status.value,
            "status_reason": self.status_reason,
            "category": self.category,
            "created_at": self.created_at,
            "status_updated_at": self.status_updated_at,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "execution_timeout_ms": self.execution_timeout_ms,
            "last_execution_attempt": self.last_execution_attempt,
            "condition": condition_to_dict(self.condition) if self.condition else None,
            "factors": {
                "user_priority": self.factors.user_priority,
                "urgency": self.factors.urgency,
                "resource_availability": self.factors.resource_availability,
                "system_load": self.factors.system_load,
                "resource_cost": self.factors.resource_cost,
                "inherited_priority_boost": self.factors.inherited_priority_boost,
                "is_system_critical": self.factors.is_system_critical,
            },
            "last_error": self.last_error,
        }


@dataclass(frozen=True)
class TaskNode:
    """Immutable snapshot of a task's position in the graph."""

    task_id: int
    status: Optional[TaskStatus]
    dependencies: FrozenSet[int]
    dependents: FrozenSet[int]
    waiting_on: FrozenSet[int] = frozenset()  # prerequisites not yet completed


@dataclass(frozen=True)
class TaskTransition:
    """One entry of the registry's event stream."""

    task_id: int
    old_status: Optional[TaskStatus]
    new_status: TaskStatus
    reason: Optional[str]
    at: float


@dataclass(frozen=True)
class SchedulerEvent:
    """Outbound message for the event bus."""

    event_type: EventType
    data: Dict[str, Any]


# ── Submission schema ────────────────────────────────────────────────


_FACTOR_KEYS = ("priority_factors", "priorityFactors")


def _alias(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class TaskSubmission(BaseModel):
    """Validated submission message.

    Accepts snake_case or camelCase keys, and priority factors either flat
    or nested under ``priority_factors``.  A submission carries
    ``user_priority`` or ``user_priority_expression``, never both.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[int] = Field(default=None, ge=0, validation_alias=_alias("id", "task_id", "taskId"))
    query: str
    user_priority: Optional[float] = Field(
        default=None, ge=0, le=100, validation_alias=_alias("user_priority", "userPriority"),
    )
    user_priority_expression: Optional[str] = Field(
        default=None, validation_alias=_alias("user_priority_expression", "userPriorityExpression"),
    )
    urgency: float = Field(default=0.0, ge=0, le=100)
    resource_availability: float = Field(
        default=1.0, ge=0, le=1, validation_alias=_alias("resource_availability", "resourceAvailability"),
    )
    system_load: float = Field(default=0.0, ge=0, le=1, validation_alias=_alias("system_load", "systemLoad"))
    resource_cost: float = Field(default=0.0, ge=0, le=100, validation_alias=_alias("resource_cost", "resourceCost"))
    inherited_priority_boost: float = Field(
        default=0.0, ge=0, le=100,
        validation_alias=_alias("inherited_priority_boost", "inheritedPriorityBoost"),
    )
    is_system_critical: bool = Field(
        default=False, validation_alias=_alias("is_system_critical", "isSystemCritical"),
    )
    created_at: Optional[float] = Field(default=None, validation_alias=_alias("created_at", "createdAt"))
    category: str = "default"
    dependencies: List[int] = Field(default_factory=list)
    condition: Optional[Any] = Field(
        default=None, validation_alias=_alias("condition", "condition_expression", "conditionExpression"),
    )
    max_retries: Optional[int] = Field(default=None, ge=0, validation_alias=_alias("max_retries", "maxRetries"))
    execution_timeout_ms: Optional[int] = Field(
        default=None, gt=0,
        validation_alias=_alias("execution_timeout_ms", "execution_timeout", "executionTimeout"),
    )
    log_priority: bool = Field(default=False, validation_alias=_alias("log_priority", "logPriority"))

    @model_validator(mode="before")
    @classmethod
    def _flatten_factors(cls, data: Any) -> Any:
        if not isinstance(data, Mapping):
            return data
        merged = dict(data)
        for key in _FACTOR_KEYS:
            nested = merged.pop(key, None)
            if nested is None:
                continue
            if not isinstance(nested, Mapping):
                raise ValueError(f"{key} must be a mapping")
            for name, value in nested.items():
                merged.setdefault(name, value)
        return merged

    @field_validator("query")
    @classmethod
    def _query_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("query must not be blank")
        return v

    @field_validator("dependencies")
    @classmethod
    def _dedupe_dependencies(cls, v: List[int]) -> List[int]:
        return list(dict.fromkeys(v))

    @model_validator(mode="after")
    def _check_consistency(self) -> "TaskSubmission":
        if self.user_priority is not None and self.user_priority_expression is not None:
            raise ValueError("give user_priority or user_priority_expression, not both")
        if self.id is not None and self.id in self.dependencies:
            raise ValueError(f"task {self.id} cannot depend on itself")
        return self

    @classmethod
    def parse(cls, message: Any) -> "TaskSubmission":
        """Validate a raw message, raising the engine's ``ValidationError``."""
        if isinstance(message, cls):
            return message
        if not isinstance(message, Mapping):
            raise ValidationError(
                f"Task submission must be a mapping, got {type(message).__name__}"
            )
        try:
            return cls.model_validate(message)
        except PydanticValidationError as exc:
            errors = exc.errors(include_url=False, include_context=False)
            summary = "; ".join(
                f"{'.'.join(str(p) for p in e['loc']) or 'submission'}: {e['msg']}" for e in errors
            )
            raise ValidationError(
                f"Invalid task submission: {summary}",
                details={"errors": [{"loc": list(e["loc"]), "msg": e["msg"]} for e in errors]},
            ) from exc
