"""
Periodic task scheduler used for the in-process dead-man sweep.
"""

import asyncio
import time
from unittest.mock import AsyncMock

import pytest

from dkv.core.scheduler import Scheduler


@pytest.fixture
def scheduler():
    return Scheduler(tick_sec=0.01)


class TestSchedulerRegistration:
    """Test task registration functionality."""

    def test_register_task_valid(self, scheduler):
        scheduler.register_task("test_task", 30, AsyncMock())

        assert scheduler.list_tasks() == ["test_task"]

    def test_register_task_invalid_func(self, scheduler):
        with pytest.raises(ValueError, match="Task function must be callable"):
            scheduler.register_task("bad_task", 30, "not_callable")

    def test_register_task_invalid_interval(self, scheduler):
        with pytest.raises(ValueError, match="Interval must be >= 1 second"):
            scheduler.register_task("bad_task", 0, AsyncMock())

    def test_register_duplicate_task(self, scheduler):
        """Registering an existing name replaces the task."""
        scheduler.register_task("duplicate", 30, AsyncMock())
        scheduler.register_task("duplicate", 60, AsyncMock())

        assert len(scheduler.list_tasks()) == 1
        assert scheduler.tasks["duplicate"]["interval"] == 60

    def test_unregister_task(self, scheduler):
        scheduler.register_task("test_task", 30, AsyncMock())
        scheduler.unregister_task("test_task")
        assert "test_task" not in scheduler.list_tasks()

    def test_unregister_nonexistent_task(self, scheduler):
        scheduler.unregister_task("nonexistent")


class TestSchedulerScheduling:
    """Test task scheduling logic."""

    def test_should_run_first_time(self, scheduler):
        assert scheduler.should_run_task({"last_run": None, "interval": 30}) is True

    def test_should_run_when_due(self, scheduler):
        past_time = time.monotonic() - 35
        assert scheduler.should_run_task({"last_run": past_time, "interval": 30}) is True

    def test_should_not_run_too_soon(self, scheduler):
        recent_time = time.monotonic() - 10
        assert scheduler.should_run_task({"last_run": recent_time, "interval": 30}) is False


class TestSchedulerExecution:
    """Test task execution and the scheduling loop."""

    def test_run_task_success(self, scheduler):
        mock_func = AsyncMock()
        task_info = {"func": mock_func, "interval": 30, "last_run": None}

        asyncio.run(scheduler.run_task("test_task", task_info))

        mock_func.assert_awaited_once()
        assert task_info["last_run"] is not None

    def test_run_task_failure(self, scheduler):
        mock_func = AsyncMock(side_effect=ValueError("Task failed"))
        task_info = {"func": mock_func, "interval": 30, "last_run": None}

        with pytest.raises(RuntimeError, match="Task failed"):
            asyncio.run(scheduler.run_task("failing_task", task_info))

        # a failed run still waits a full interval
        assert task_info["last_run"] is not None

    def test_loop_runs_due_tasks_and_stops(self, scheduler):
        task = AsyncMock()
        scheduler.register_task("sweep", 60, task)

        async def scenario():
            scheduler.start()
            await asyncio.sleep(0.05)
            assert scheduler.running is True
            await scheduler.stop()

        asyncio.run(scenario())
        task.assert_awaited_once()
        assert scheduler.running is False

    def test_failing_task_does_not_stop_loop(self, scheduler):
        failing = AsyncMock(side_effect=ValueError("boom"))
        healthy = AsyncMock()
        scheduler.register_task("failing", 60, failing)
        scheduler.register_task("healthy", 60, healthy)

        async def scenario():
            scheduler.start()
            await asyncio.sleep(0.05)
            await scheduler.stop()

        asyncio.run(scenario())
        failing.assert_awaited_once()
        healthy.assert_awaited_once()

    def test_stop_before_first_tick(self, scheduler):
        task = AsyncMock()
        scheduler.register_task("sweep", 60, task)

        async def scenario():
            scheduler.start()
            await scheduler.stop()

        asyncio.run(scenario())
        task.assert_not_awaited()

    def test_start_already_running(self, scheduler):
        async def scenario():
            scheduler.start()
            await asyncio.sleep(0.02)
            try:
                with pytest.raises(RuntimeError, match="already running"):
                    scheduler.start()
            finally:
                await scheduler.stop()

        asyncio.run(scenario())

    def test_stop_not_running(self, scheduler):
        asyncio.run(scheduler.stop())


class TestSchedulerStatus:
    def test_get_status_stopped(self, scheduler):
        status = scheduler.get_status()
        assert status["status"] == "stopped"
        assert status["tasks"] == {}

    def test_get_status_lists_tasks(self, scheduler):
        scheduler.register_task("test_task", 60, AsyncMock())
        status = scheduler.get_status()
        assert status["tasks"]["test_task"]["interval_sec"] == 60
        assert status["tasks"]["test_task"]["next_run"] is None

    def test_get_status_reports_wall_clock_times(self, scheduler):
        scheduler.register_task("sweep", 60, AsyncMock())
        before = time.time()

        asyncio.run(scheduler.run_task("sweep", scheduler.tasks["sweep"]))

        task = scheduler.get_status()["tasks"]["sweep"]
        assert before <= task["last_run"] <= time.time()
        assert task["next_run"] == task["last_run"] + 60
