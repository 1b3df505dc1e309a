"""
Unit tests for the update schedule.

Tests verify:
- Next run time follows the cron expression
- A batch runs scan -> update and reports scan failures
- The loop sleeps until the next run before every batch
"""

import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

from docker_monitor.periodic_jobs import PeriodicJobsManager
from updates.types import BatchResult

NOW = datetime(2024, 3, 6, 12, 0, tzinfo=timezone.utc)  # a Wednesday


class StopLoop(Exception):
    pass


@pytest.fixture
def checker():
    checker = MagicMock()
    checker.fetch_updates = AsyncMock(return_value=[])
    return checker


@pytest.fixture
def executor():
    executor = MagicMock()
    executor.execute_updates = AsyncMock(return_value=BatchResult(candidates=1, successful=1, updated=["web"]))
    return executor


def make_jobs(checker, executor, notifications, interval="@weekly", sleep=None):
    return PeriodicJobsManager(checker, executor, notifications, interval,
                               sleep=sleep or AsyncMock(), now=lambda: NOW)


class TestNextRunTime:

    def test_weekly(self, checker, executor, notifications):
        jobs = make_jobs(checker, executor, notifications)
        assert jobs.next_run_time() == datetime(2024, 3, 10, 0, 0, tzinfo=timezone.utc)

    def test_daily_cron(self, checker, executor, notifications):
        jobs = make_jobs(checker, executor, notifications, interval="0 4 * * *")
        assert jobs.next_run_time() == datetime(2024, 3, 7, 4, 0, tzinfo=timezone.utc)

    def test_strictly_after_now(self, checker, executor, notifications):
        jobs = make_jobs(checker, executor, notifications, interval="0 12 * * *")
        assert jobs.next_run_time() == datetime(2024, 3, 7, 12, 0, tzinfo=timezone.utc)


class TestRunUpdateCycle:

    @pytest.mark.asyncio
    async def test_no_candidates(self, checker, executor, notifications):
        result = await make_jobs(checker, executor, notifications).run_update_cycle()

        assert result == BatchResult()
        executor.execute_updates.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_candidates_are_updated(self, checker, executor, notifications):
        candidate = MagicMock()
        checker.fetch_updates.return_value = [candidate]

        result = await make_jobs(checker, executor, notifications).run_update_cycle()

        executor.execute_updates.assert_awaited_once_with([candidate])
        assert result.updated == ["web"]

    @pytest.mark.asyncio
    async def test_scan_failure_is_reported(self, checker, executor, notifications, recording_sink):
        checker.fetch_updates.side_effect = Exception("daemon unavailable")

        result = await make_jobs(checker, executor, notifications).run_update_cycle()

        assert result == BatchResult()
        errors = recording_sink.events("error")
        assert len(errors) == 1
        assert errors[0][0] == "Unable to fetch updates"
        executor.execute_updates.assert_not_awaited()


class TestRunForever:

    @pytest.mark.asyncio
    async def test_sleeps_until_next_run_then_runs_batch(self, checker, executor, notifications):
        sleep = AsyncMock(side_effect=[None, StopLoop()])
        jobs = make_jobs(checker, executor, notifications, sleep=sleep)

        with pytest.raises(StopLoop):
            await jobs.run_forever()

        # Wednesday noon -> Sunday midnight
        assert sleep.await_args_list[0].args[0] == 3.5 * 86400
        checker.fetch_updates.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_batch_failure_does_not_stop_schedule(self, checker, executor, notifications):
        checker.fetch_updates.return_value = [MagicMock()]
        executor.execute_updates.side_effect = Exception("unexpected")
        sleep = AsyncMock(side_effect=[None, None, StopLoop()])
        jobs = make_jobs(checker, executor, notifications, sleep=sleep)

        with pytest.raises(StopLoop):
            await jobs.run_forever()

        assert executor.execute_updates.await_count == 2
