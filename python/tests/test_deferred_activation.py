"""Tests for cogsched.scheduling.deferred_activation."""

import pytest

from cogsched.scheduling.conditions import ConditionEvaluator, Leaf, Threshold
from cogsched.scheduling.deferred_activation import DeferredActivationManager
from cogsched.scheduling.dependency_graph import DependencyGraph
from cogsched.scheduling.models import Task, TaskStatus
from cogsched.scheduling.task_registry import TaskRegistry


@pytest.fixture
def registry(clock):
    return TaskRegistry(clock=clock)


@pytest.fixture
def graph():
    return DependencyGraph()


@pytest.fixture
def manager(registry, graph):
    return DeferredActivationManager(registry, graph, ConditionEvaluator())


def add(registry, graph, task_id, condition=None):
    task = Task(id=task_id, query="q", condition=condition)
    graph.add_task(task_id)
    registry.submit(task)
    return task


class TestActivation:
    def test_activates_when_condition_met(self, registry, graph, manager):
        task = add(registry, graph, 1, Leaf("X"))
        manager.add_deferred(task)
        assert task.status == TaskStatus.DEFERRED
        assert 1 in manager

        assert manager.on_external_state_change(set()) == []
        assert task.status == TaskStatus.DEFERRED

        assert manager.on_external_state_change({"X"}) == [1]
        assert task.status == TaskStatus.READY
        assert 1 not in manager

    def test_activation_order_is_insertion_order(self, registry, graph, manager):
        for tid in (3, 1, 2):
            manager.add_deferred(add(registry, graph, tid, Leaf("X")))
        assert manager.on_external_state_change({"X"}) == [3, 1, 2]

    def test_waits_for_dependencies(self, registry, graph, manager):
        prereq = add(registry, graph, 1)
        task = add(registry, graph, 2, Leaf("X"))
        graph.add_edge(2, 1)
        manager.add_deferred(task)

        assert manager.on_external_state_change({"X"}) == []
        assert task.status == TaskStatus.DEFERRED

        for status in (TaskStatus.READY, TaskStatus.RUNNING, TaskStatus.COMPLETED):
            registry.transition(prereq.id, status)
        assert manager.on_external_state_change({"X"}) == [2]

    def test_malformed_condition_stays_deferred(self, registry, graph, manager):
        task = add(registry, graph, 1, Threshold([Leaf("X")], k=4))
        manager.add_deferred(task)
        assert manager.on_external_state_change({"X"}) == []
        assert task.status == TaskStatus.DEFERRED
        assert "exceeds" in task.status_reason

    def test_remove(self, registry, graph, manager):
        manager.add_deferred(add(registry, graph, 1, Leaf("X")))
        assert manager.remove(1) is True
        assert manager.remove(1) is False
        assert manager.deferred_ids() == []

    def test_activation_records_transition(self, registry, graph, manager):
        manager.add_deferred(add(registry, graph, 1, Leaf("X")))
        registry.drain_transitions()
        manager.on_external_state_change({"X"})
        (tr,) = registry.drain_transitions()
        assert (tr.old_status, tr.new_status, tr.reason) == (TaskStatus.DEFERRED, TaskStatus.READY, "activated")
