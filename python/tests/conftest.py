"""Shared fixtures: a hand-driven clock and timer service."""

from typing import Callable, List

import pytest

from cogsched.config.settings import Settings
from cogsched.di_container import SchedulerContainer


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class _ManualHandle:
    def __init__(self, due: float, callback: Callable[[], None]) -> None:
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualTimerService:
    """TimerService whose timers fire only from ``advance()``.

    Shares time with a ``ManualClock`` so age-based scoring and timeouts
    move together.
    """

    def __init__(self, clock: ManualClock) -> None:
        self.clock = clock
        self._handles: List[_ManualHandle] = []

    def call_later(self, delay: float, callback: Callable[[], None]) -> _ManualHandle:
        handle = _ManualHandle(self.clock.now + delay, callback)
        self._handles.append(handle)
        return handle

    @property
    def pending(self) -> List[_ManualHandle]:
        return [h for h in self._handles if not h.cancelled]

    def advance(self, seconds: float) -> None:
        """Move time forward, firing due timers in due order."""
        target = self.clock.now + seconds
        while True:
            due = sorted(
                (h for h in self._handles if not h.cancelled and h.due <= target),
                key=lambda h: h.due,
            )
            if not due:
                break
            handle = due[0]
            handle.cancelled = True
            self.clock.now = max(self.clock.now, handle.due)
            handle.callback()
        self.clock.now = target


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def timers(clock):
    return ManualTimerService(clock)


@pytest.fixture
def settings():
    return Settings(
        max_concurrent_tasks=4,
        default_max_retries=3,
        default_execution_timeout_ms=30000,
        retry_backoff_base_ms=1000,
        retry_backoff_max_ms=30000,
        _env_file=None,
    )


@pytest.fixture
def container(settings, clock, timers):
    c = SchedulerContainer(settings=settings, clock=clock, timer_service=timers)
    yield c
    c.shutdown()


@pytest.fixture
def scheduler(container):
    return container.scheduler
