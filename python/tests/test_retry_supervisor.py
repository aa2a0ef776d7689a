"""Tests for cogsched.scheduling.retry_supervisor."""

import asyncio
from unittest.mock import MagicMock

import pytest

from cogsched.exceptions import RetryConfig, TaskTimeoutError
from cogsched.scheduling.models import Task
from cogsched.scheduling.retry_supervisor import AsyncioTimerService, RetryTimeoutSupervisor


@pytest.fixture
def supervisor(timers):
    return RetryTimeoutSupervisor(timers, RetryConfig(initial_delay_ms=1000, max_delay_ms=30000))


class TestExecutionTimers:
    def test_fires_after_timeout(self, supervisor, timers):
        on_timeout = MagicMock()
        supervisor.arm(Task(id=1, query="q", execution_timeout_ms=500), on_timeout)
        assert supervisor.is_armed(1)

        timers.advance(0.499)
        on_timeout.assert_not_called()
        timers.advance(0.002)

        on_timeout.assert_called_once()
        task_id, error = on_timeout.call_args.args
        assert task_id == 1
        assert isinstance(error, TaskTimeoutError)
        assert error.timeout_ms == 500
        assert not supervisor.is_armed(1)
        assert supervisor.stats["timeouts_fired"] == 1

    def test_disarm_prevents_fire(self, supervisor, timers):
        on_timeout = MagicMock()
        supervisor.arm(Task(id=1, query="q", execution_timeout_ms=500), on_timeout)
        assert supervisor.disarm(1) is True
        assert supervisor.disarm(1) is False
        timers.advance(10)
        on_timeout.assert_not_called()

    def test_rearm_replaces_timer(self, supervisor, timers):
        on_timeout = MagicMock()
        task = Task(id=1, query="q", execution_timeout_ms=500)
        supervisor.arm(task, on_timeout)
        timers.advance(0.4)
        supervisor.arm(task, on_timeout)
        timers.advance(0.4)
        on_timeout.assert_not_called()
        timers.advance(0.2)
        on_timeout.assert_called_once()

    def test_armed_context_disarms_on_error(self, supervisor, timers):
        on_timeout = MagicMock()
        supervisor.arm(Task(id=1, query="q", execution_timeout_ms=500), on_timeout)
        with pytest.raises(RuntimeError):
            with supervisor.armed(1):
                raise RuntimeError("boom")
        assert not supervisor.is_armed(1)
        timers.advance(1)
        on_timeout.assert_not_called()

    def test_close_cancels_everything(self, supervisor, timers):
        on_timeout = MagicMock()
        reinsert = MagicMock()
        supervisor.arm(Task(id=1, query="q", execution_timeout_ms=500), on_timeout)
        supervisor.schedule_backoff(2, 100, reinsert)
        supervisor.close()
        assert timers.pending == []
        timers.advance(60)
        on_timeout.assert_not_called()
        reinsert.assert_not_called()


class TestRetryDecisions:
    def test_backoff_is_exponential_and_capped(self, supervisor):
        assert [supervisor.backoff_delay_ms(n) for n in range(7)] == [
            1000, 2000, 4000, 8000, 16000, 30000, 30000,
        ]

    def test_decide_within_budget(self, supervisor):
        task = Task(id=1, query="q", retry_count=1, max_retries=3)
        decision = supervisor.decide(task, "timeout")
        assert decision.should_retry is True
        assert decision.attempt == 2
        # computed from the count after this retry is taken
        assert decision.delay_ms == 4000

    def test_decide_budget_exhausted(self, supervisor):
        task = Task(id=1, query="q", retry_count=3, max_retries=3)
        decision = supervisor.decide(task, "execution_failed")
        assert decision.should_retry is False
        assert "exhausted" in decision.message

    def test_zero_budget_never_retries(self, supervisor):
        assert supervisor.decide(Task(id=1, query="q", max_retries=0), "timeout").should_retry is False

    def test_history_and_stats(self, supervisor):
        task = Task(id=1, query="q", max_retries=1)
        supervisor.decide(task, "timeout")
        task.retry_count = 1
        supervisor.decide(task, "timeout")
        assert [d.should_retry for d in supervisor.get_history(1)] == [True, False]
        stats = supervisor.stats
        assert stats["retries_approved"] == 1
        assert stats["retries_denied"] == 1
        assert stats["tasks_with_retries"] == 1

    def test_backoff_callback(self, supervisor, timers):
        reinsert = MagicMock()
        supervisor.schedule_backoff(4, 1000, reinsert)
        assert supervisor.in_backoff(4)
        timers.advance(0.999)
        reinsert.assert_not_called()
        timers.advance(0.002)
        reinsert.assert_called_once_with(4)
        assert not supervisor.in_backoff(4)

    def test_first_retry_waits_twice_the_base(self, supervisor):
        decision = supervisor.decide(Task(id=1, query="q", max_retries=3), "timeout")
        assert decision.delay_ms == 2000

    def test_forget_drops_timers_and_history(self, supervisor, timers):
        task = Task(id=1, query="q", max_retries=1)
        supervisor.decide(task, "timeout")
        supervisor.schedule_backoff(1, 1000, MagicMock())
        supervisor.forget(1)
        assert supervisor.get_history(1) == []
        assert not supervisor.in_backoff(1)
        assert supervisor.stats["tasks_with_retries"] == 0
        assert timers.pending == []

    def test_cancel_backoff(self, supervisor, timers):
        reinsert = MagicMock()
        supervisor.schedule_backoff(4, 1000, reinsert)
        assert supervisor.cancel_backoff(4) is True
        timers.advance(5)
        reinsert.assert_not_called()


class TestAsyncioTimerService:
    async def test_uses_running_loop(self):
        fired = asyncio.Event()
        supervisor = RetryTimeoutSupervisor(AsyncioTimerService())
        supervisor.arm(Task(id=1, query="q", execution_timeout_ms=5), lambda tid, err: fired.set())
        await asyncio.wait_for(fired.wait(), timeout=1.0)
        assert not supervisor.is_armed(1)

    async def test_disarmed_timer_does_not_fire(self):
        fired = []
        supervisor = RetryTimeoutSupervisor(AsyncioTimerService())
        supervisor.arm(Task(id=1, query="q", execution_timeout_ms=5), lambda tid, err: fired.append(tid))
        supervisor.disarm(1)
        await asyncio.sleep(0.02)
        assert fired == []
