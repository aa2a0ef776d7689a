"""Interface for the external state the condition evaluator reads.

The memory collaborator owns the state; the engine only ever asks which
prerequisite labels are currently satisfied.
"""

from typing import FrozenSet, Iterable, Protocol


class StateSnapshot(Protocol):
    """Read-only view of satisfied prerequisite labels."""

    def satisfied_labels(self) -> FrozenSet[str]:
        """Return the labels that currently count as satisfied."""
        ...


class CompletedTopics:
    """Set-backed ``StateSnapshot`` fed by ``memory_updated`` notifications.

    Owned by the runtime adapter, not by the scheduler: the scheduler reads
    ``satisfied_labels()`` and never calls the mutators.
    """

    def __init__(self, topics: Iterable[str] = ()) -> None:
        self._topics = set(topics)

    def satisfied_labels(self) -> FrozenSet[str]:
        return frozenset(self._topics)

    def apply_update(self, topic: str, status: str) -> bool:
        """Fold a ``memory_updated{topic, status}`` notification.

        ``completed`` marks the topic satisfied, any other status retracts it.
        Returns True when the satisfied set changed.
        """
        before = len(self._topics)
        if status == "completed":
            self._topics.add(topic)
        else:
            self._topics.discard(topic)
        return len(self._topics) != before

    def __contains__(self, topic: object) -> bool:
        return topic in self._topics

    def __len__(self) -> int:
        return len(self._topics)
