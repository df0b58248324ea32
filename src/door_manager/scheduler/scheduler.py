"""Recurring expiry sweeps for day codes."""

import logging
from typing import Awaitable, Callable, Optional
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)

DAILY_SWEEP_JOB_ID = "daily_expiry_sweep"
CATCHUP_SWEEP_JOB_ID = "catchup_expiry_sweep"


class ExpiryScheduler:
    """Runs the expiry sweep daily at the cutoff and on a short catch-up interval.

    The catch-up job covers cutoffs missed while the process was down. It
    counts expired codes first and only sweeps when there is work to do.
    """

    def __init__(
        self,
        on_sweep: Callable[[], Awaitable[object]],
        count_expired: Callable[[], Awaitable[int]],
        timezone: ZoneInfo,
        expiry_hour: int = 3,
        catchup_interval_minutes: int = 5,
    ):
        """Initialize the scheduler.

        Args:
            on_sweep: Callback that runs the expiry sweep.
            count_expired: Callback returning how many codes are due for expiry.
            timezone: Timezone of the daily cutoff.
            expiry_hour: Local hour of the daily sweep.
            catchup_interval_minutes: Catch-up check interval.
        """
        self._on_sweep = on_sweep
        self._count_expired = count_expired
        self._timezone = timezone
        self._expiry_hour = expiry_hour
        self._catchup_interval = catchup_interval_minutes

        self._scheduler = AsyncIOScheduler(
            timezone=timezone,
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 60},
        )

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        """Start the scheduler."""
        self._scheduler.add_job(
            self._handle_daily_sweep,
            CronTrigger(hour=self._expiry_hour, minute=0, timezone=self._timezone),
            id=DAILY_SWEEP_JOB_ID,
            replace_existing=True,
        )
        self._scheduler.add_job(
            self._handle_catchup_sweep,
            IntervalTrigger(minutes=self._catchup_interval),
            id=CATCHUP_SWEEP_JOB_ID,
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(
            "Scheduler started. Will expire codes at %02d:00 %s daily, "
            "with catch-up checks every %d minutes.",
            self._expiry_hour, self._timezone, self._catchup_interval,
        )

    def stop(self) -> None:
        """Stop the scheduler."""
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")

    async def _handle_daily_sweep(self) -> None:
        """Handle the fixed-time sweep."""
        logger.info("Running scheduled expiration at %02d:00", self._expiry_hour)
        try:
            await self._on_sweep()
        except Exception as e:
            logger.error(f"Error during scheduled expiration: {e}")

    async def _handle_catchup_sweep(self) -> Optional[object]:
        """Handle the catch-up check. Quiet unless expired codes are found."""
        try:
            expired_count = await self._count_expired()
            if expired_count == 0:
                return None
            logger.info("Cleanup check found %d expired code(s)", expired_count)
            return await self._on_sweep()
        except Exception as e:
            logger.error(f"Error during cleanup check: {e}")
            return None

    def get_jobs(self) -> list[dict]:
        """Describe the scheduled jobs and their next run times."""
        return [
            {
                "id": job.id,
                "next_run_time": (
                    job.next_run_time.isoformat() if job.next_run_time else None
                ),
            }
            for job in self._scheduler.get_jobs()
        ]
