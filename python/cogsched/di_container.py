"""Dependency injection container for cogsched.

Lightweight wiring of the engine's components.  Uses lazy initialization:
components are created on first access.  There is no global instance; build
one container per scheduler and pass it where it is needed.
"""

import logging
import time
from typing import Any, Callable, Dict, Optional

from cogsched.config.settings import Settings, get_settings
from cogsched.scheduling.retry_supervisor import AsyncioTimerService, TimerService

logger = logging.getLogger(__name__)


class SchedulerContainer:
    """Service container: settings → bus → components → scheduler → runtime."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], float]] = None,
        timer_service: Optional[TimerService] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock or time.time
        self._timer_service = timer_service
        self._event_bus = None
        self._topics = None
        self._registry = None
        self._graph = None
        self._calculator = None
        self._evaluator = None
        self._deferred = None
        self._supervisor = None
        self._scheduler = None
        self._runtime = None

    @property
    def timer_service(self) -> TimerService:
        if self._timer_service is None:
            self._timer_service = AsyncioTimerService()
        return self._timer_service

    @property
    def event_bus(self):
        if self._event_bus is None:
            from cogsched.event_bus import InMemoryEventBus
            self._event_bus = InMemoryEventBus()
        return self._event_bus

    @property
    def topics(self):
        if self._topics is None:
            from cogsched.interfaces.state_snapshot import CompletedTopics
            self._topics = CompletedTopics()
        return self._topics

    @property
    def registry(self):
        if self._registry is None:
            from cogsched.scheduling.task_registry import TaskRegistry
            self._registry = TaskRegistry(
                clock=self.clock, history_size=self.settings.transition_history_size,
            )
        return self._registry

    @property
    def graph(self):
        if self._graph is None:
            from cogsched.scheduling.dependency_graph import DependencyGraph
            self._graph = DependencyGraph()
        return self._graph

    @property
    def calculator(self):
        if self._calculator is None:
            from cogsched.scheduling.priority import PriorityCalculator, PriorityWeights
            self._calculator = PriorityCalculator(
                PriorityWeights.from_settings(self.settings), clock=self.clock,
            )
        return self._calculator

    @property
    def evaluator(self):
        if self._evaluator is None:
            from cogsched.scheduling.conditions import ConditionEvaluator
            self._evaluator = ConditionEvaluator(debug=self.settings.log_level == "DEBUG")
        return self._evaluator

    @property
    def deferred(self):
        if self._deferred is None:
            from cogsched.scheduling.deferred_activation import DeferredActivationManager
            self._deferred = DeferredActivationManager(self.registry, self.graph, self.evaluator)
        return self._deferred

    @property
    def supervisor(self):
        if self._supervisor is None:
            from cogsched.scheduling.retry_supervisor import RetryTimeoutSupervisor
            self._supervisor = RetryTimeoutSupervisor(self.timer_service, self.settings.retry_config())
        return self._supervisor

    @property
    def scheduler(self):
        if self._scheduler is None:
            from cogsched.scheduling.scheduler import Scheduler
            self._scheduler = Scheduler(
                registry=self.registry,
                graph=self.graph,
                calculator=self.calculator,
                evaluator=self.evaluator,
                deferred=self.deferred,
                supervisor=self.supervisor,
                state=self.topics,
                max_concurrent_tasks=self.settings.max_concurrent_tasks,
                default_max_retries=self.settings.default_max_retries,
                default_execution_timeout_ms=self.settings.default_execution_timeout_ms,
                clock=self.clock,
            )
            logger.info(
                "Scheduler initialized (max_concurrent_tasks=%s)", self.settings.max_concurrent_tasks,
            )
        return self._scheduler

    def runtime(self, dispatcher=None):
        """The message pump; *dispatcher* is honoured on first creation only."""
        if self._runtime is None:
            from cogsched.runtime import SchedulerRuntime
            self._runtime = SchedulerRuntime(
                self.scheduler, self.event_bus, topics=self.topics, dispatcher=dispatcher,
            )
        return self._runtime

    def shutdown(self) -> None:
        """Cancel every outstanding timer."""
        if self._supervisor is not None:
            self._supervisor.close()

    def status(self) -> Dict[str, Any]:
        """Report which services are initialized."""
        return {
            "event_bus": self._event_bus is not None,
            "topics": self._topics is not None,
            "registry": self._registry is not None,
            "graph": self._graph is not None,
            "calculator": self._calculator is not None,
            "evaluator": self._evaluator is not None,
            "deferred": self._deferred is not None,
            "supervisor": self._supervisor is not None,
            "scheduler": self._scheduler is not None,
            "runtime": self._runtime is not None,
        }
