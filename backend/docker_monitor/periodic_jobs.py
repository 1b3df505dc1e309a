"""
Periodic Jobs Module for YACU
Runs the scan/update/reclaim batch on a cron schedule
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from croniter import croniter

from notifications import Notifications
from updates.types import BatchResult
from updates.update_checker import UpdateChecker
from updates.update_executor import UpdateExecutor
from utils.time_utils import humanize_duration

logger = logging.getLogger(__name__)

# Wait before recomputing the schedule when croniter fails unexpectedly
SCHEDULE_RETRY_SECONDS = 3


def _local_now() -> datetime:
    return datetime.now().astimezone()


class PeriodicJobsManager:
    """
    Drives update batches on a cron schedule.

    Exactly one batch runs at a time: the next run time is computed only
    after the previous batch has completed.
    """

    def __init__(self, checker: UpdateChecker, executor: UpdateExecutor, notifications: Notifications,
                 interval: str, sleep=asyncio.sleep, now: Callable[[], datetime] = _local_now):
        self.checker = checker
        self.executor = executor
        self.notifications = notifications
        self.interval = interval
        self.sleep = sleep
        self.now = now

    def next_run_time(self, now: Optional[datetime] = None) -> datetime:
        """Next scheduled run strictly after now"""
        return croniter(self.interval, now or self.now()).get_next(datetime)

    async def run_update_cycle(self) -> BatchResult:
        """
        Run one batch: scan, update every candidate, reclaim images.

        A failed scan is reported and yields an empty result.
        """
        try:
            candidates = await self.checker.fetch_updates()
        except Exception as e:
            logger.error(f"Unable to fetch updates: {e}", exc_info=True)
            await self.notifications.error("Unable to fetch updates", e)
            return BatchResult()

        if not candidates:
            logger.info("No new updates found")
            return BatchResult()

        logger.info(f"Found {len(candidates)} new update(s)")
        result = await self.executor.execute_updates(candidates)
        logger.info(f"Update cycle complete: {result.successful} successful, {result.failed} failed, "
                    f"{result.images_removed} image(s) removed")
        return result

    async def run_forever(self):
        """Sleep until the next scheduled time, run a batch, repeat"""
        logger.info(f"Update schedule: {self.interval}")
        while True:
            try:
                now = self.now()
                next_time = self.next_run_time(now)
            except Exception as e:
                logger.error(f"Unknown error while calculating next run time: {e}", exc_info=True)
                await self.sleep(SCHEDULE_RETRY_SECONDS)
                continue

            remaining = next_time - now
            logger.info(f"Next run time in {humanize_duration(remaining)}.")
            await self.sleep(max(remaining.total_seconds(), 0))

            try:
                await self.run_update_cycle()
            except Exception as e:
                logger.error(f"Error in update cycle: {e}", exc_info=True)
