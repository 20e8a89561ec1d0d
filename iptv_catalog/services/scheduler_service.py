import logging
from collections.abc import Awaitable, Callable
from datetime import datetime

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger


logger = logging.getLogger(__name__)

JobFunc = Callable[[], Awaitable[None]]


class JobScheduler:
    """Process-wide scheduler for cache polling, guide refresh and session sweeps"""

    def __init__(self, misfire_grace_sec: int = 3600):
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self._misfire_grace_sec = misfire_grace_sec

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self) -> None:
        """Start the scheduler (must be called from a running event loop)"""
        if self.scheduler.running:
            logger.warning("Scheduler already running")
            return
        self.scheduler.start()
        logger.info("Scheduler started with %s job(s)", len(self.scheduler.get_jobs()))

    def shutdown(self) -> None:
        """Shutdown the scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

    def add_cron_job(self, job_id: str, func: JobFunc, crontab: str) -> None:
        """
        Schedule a coroutine with a crontab expression ('0 3 * * *').

        Replaces any existing job with the same id.

        Raises:
            ValueError: If the crontab expression is invalid
        """
        try:
            trigger = CronTrigger.from_crontab(crontab, timezone="UTC")
        except (ValueError, KeyError) as exc:
            logger.error("Invalid cron expression '%s': %s", crontab, exc)
            raise ValueError(f"Invalid cron expression '{crontab}'") from exc

        self._add_job(job_id, func, trigger)
        logger.debug("Cron job %s scheduled (%s)", job_id, crontab)

    def add_interval_job(self, job_id: str, func: JobFunc, seconds: float) -> None:
        """Schedule a coroutine every `seconds`, replacing any job with the same id"""
        self._add_job(job_id, func, IntervalTrigger(seconds=seconds, timezone="UTC"))
        logger.debug("Interval job %s scheduled (every %ss)", job_id, seconds)

    def _add_job(self, job_id: str, func: JobFunc, trigger) -> None:
        if not self.scheduler.running:
            # pending jobs are not deduplicated until start()
            self.remove_job(job_id)
        self.scheduler.add_job(
            func,
            trigger=trigger,
            id=job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=self._misfire_grace_sec,
        )

    def remove_job(self, job_id: str) -> bool:
        """Remove a job; unknown ids are ignored"""
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            return False
        logger.debug("Job %s removed", job_id)
        return True

    def has_job(self, job_id: str) -> bool:
        return self.scheduler.get_job(job_id) is not None

    def get_next_run_time(self, job_id: str) -> datetime | None:
        """Get next scheduled run time of a job"""
        job = self.scheduler.get_job(job_id)
        return getattr(job, "next_run_time", None) if job else None
