"""
Unified error hierarchy for the cogsched scheduling engine.

Every error raised by the engine derives from ``SchedulerException`` and
carries an ``ErrorContext`` with a category, severity and free-form details:

- Structural errors (validation, dependency cycle, malformed condition) are
  raised synchronously at submission time and leave no state behind.
- Runtime errors (timeout, retry exhaustion) are never raised to the caller;
  they are recorded on the task and surfaced through ``task_failed`` events.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


# ============================================================================
# Enums & Constants
# ============================================================================

class ErrorSeverity(Enum):
    """Error severity levels."""
    CRITICAL = "critical"      # Engine cannot continue
    ERROR = "error"            # Operation failed, task impacted
    WARNING = "warning"        # Rejected input, engine unaffected
    INFO = "info"              # Informational, no action needed


class ErrorCategory(Enum):
    """Error categories for classification and routing."""
    VALIDATION = "validation"           # Malformed submission
    DEPENDENCY = "dependency"           # Dependency graph violation
    CONDITION = "condition"             # Malformed condition expression
    NOT_FOUND = "not_found"             # Unknown task id
    STATE = "state"                     # Illegal lifecycle transition
    TIMEOUT = "timeout"                 # Execution timeout
    RETRY = "retry"                     # Retry budget exhausted
    INTERNAL = "internal"               # Internal engine error


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class ErrorContext:
    """Rich error context with metadata."""
    error_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    severity: ErrorSeverity = ErrorSeverity.ERROR
    category: ErrorCategory = ErrorCategory.INTERNAL
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    is_recoverable: bool = True

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (safe for event payloads)."""
        return {
            "error_id": self.error_id,
            "timestamp": self.timestamp.isoformat(),
            "severity": self.severity.value,
            "category": self.category.value,
            "message": self.message,
            "details": self.details,
            "is_recoverable": self.is_recoverable,
        }


@dataclass
class RetryConfig:
    """Exponential backoff configuration.

    ``get_delay_ms(n)`` is ``min(max_delay_ms, initial_delay_ms * base ** n)``.
    """
    initial_delay_ms: int = 1000
    max_delay_ms: int = 30000
    exponential_base: float = 2.0

    def get_delay_ms(self, attempt: int) -> float:
        """Calculate the delay in milliseconds for a given attempt number."""
        return min(
            self.initial_delay_ms * (self.exponential_base ** max(0, attempt)),
            self.max_delay_ms,
        )

    def get_delay(self, attempt: int) -> float:
        """Calculate the delay in seconds for a given attempt number."""
        return self.get_delay_ms(attempt) / 1000.0


# ============================================================================
# Exception Hierarchy
# ============================================================================

class SchedulerException(Exception):
    """Base exception for all engine errors with rich context."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.INTERNAL,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        details: Optional[Dict[str, Any]] = None,
        is_recoverable: bool = True,
    ):
        self.message = message
        self.category = category
        self.severity = severity
        self.details = details or {}
        self.is_recoverable = is_recoverable
        self.context = ErrorContext(
            severity=severity,
            category=category,
            message=message,
            details=self.details,
            is_recoverable=is_recoverable,
        )
        super().__init__(self.message)

    def __str__(self) -> str:
        return f"{self.category.value}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return self.context.to_dict()


# ============================================================================
# Structural Errors (rejected at submission)
# ============================================================================

class ValidationError(SchedulerException):
    """Malformed submission (missing id/query, bad factor, self-dependency)."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.VALIDATION)
        kwargs.setdefault("severity", ErrorSeverity.WARNING)
        kwargs.setdefault("is_recoverable", False)
        super().__init__(message, **kwargs)


class DependencyCycleError(SchedulerException):
    """Adding a dependency edge would close a cycle."""
    def __init__(self, cycle: List[int], **kwargs):
        self.cycle = list(cycle)
        path = " -> ".join(str(node) for node in self.cycle)
        kwargs.setdefault("category", ErrorCategory.DEPENDENCY)
        kwargs.setdefault("severity", ErrorSeverity.WARNING)
        kwargs.setdefault("is_recoverable", False)
        kwargs.setdefault("details", {"cycle": self.cycle})
        super().__init__(f"Dependency cycle detected: {path}", **kwargs)


class ConditionEvaluationError(SchedulerException):
    """Condition tree is malformed (unknown tag, bad threshold)."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.CONDITION)
        kwargs.setdefault("severity", ErrorSeverity.WARNING)
        kwargs.setdefault("is_recoverable", False)
        super().__init__(message, **kwargs)


class TaskNotFoundError(SchedulerException):
    """No task with the given id is known to the registry."""
    def __init__(self, task_id: Any, **kwargs):
        self.task_id = task_id
        kwargs.setdefault("category", ErrorCategory.NOT_FOUND)
        kwargs.setdefault("severity", ErrorSeverity.WARNING)
        kwargs.setdefault("details", {"task_id": task_id})
        super().__init__(f"Task {task_id!r} not found", **kwargs)


class InvalidTransitionError(SchedulerException):
    """Requested status change is not allowed by the lifecycle state machine."""
    def __init__(self, task_id: Any, current: str, requested: str, **kwargs):
        self.task_id = task_id
        self.current = current
        self.requested = requested
        kwargs.setdefault("category", ErrorCategory.STATE)
        kwargs.setdefault("details", {
            "task_id": task_id, "current": current, "requested": requested,
        })
        super().__init__(
            f"Cannot move task {task_id!r} from {current!r} to {requested!r}",
            **kwargs,
        )


# ============================================================================
# Runtime Errors (recorded on the task, never raised to the caller)
# ============================================================================

class TaskTimeoutError(SchedulerException):
    """A running task exceeded its execution timeout."""
    def __init__(self, task_id: Any, timeout_ms: float, **kwargs):
        self.task_id = task_id
        self.timeout_ms = timeout_ms
        kwargs.setdefault("category", ErrorCategory.TIMEOUT)
        kwargs.setdefault("details", {"task_id": task_id, "timeout_ms": timeout_ms})
        super().__init__(
            f"Task {task_id!r} timed out after {timeout_ms:g}ms", **kwargs,
        )


class RetryExhaustedError(SchedulerException):
    """A task failed with no retry budget remaining."""
    def __init__(self, task_id: Any, attempts: int, last_reason: str = "", **kwargs):
        self.task_id = task_id
        self.attempts = attempts
        self.last_reason = last_reason
        kwargs.setdefault("category", ErrorCategory.RETRY)
        kwargs.setdefault("is_recoverable", False)
        kwargs.setdefault("details", {
            "task_id": task_id, "attempts": attempts, "last_reason": last_reason,
        })
        super().__init__(
            f"Task {task_id!r} failed after {attempts} attempts: {last_reason}",
            **kwargs,
        )
