"""Protocols the engine depends on.

Allows the scheduler to talk to the event bus and the external memory state
without importing concrete implementations.
"""

from cogsched.interfaces.event_bus import EventType, IEventBus
from cogsched.interfaces.state_snapshot import CompletedTopics, StateSnapshot

__all__ = [
    "CompletedTopics",
    "EventType",
    "IEventBus",
    "StateSnapshot",
]
