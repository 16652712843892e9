"""APScheduler wrapper running the distributor's periodic maintenance"""

from typing import Any, Callable, List, Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from distributor.utils.logger import get_logger

logger = get_logger(__name__)

# A flush or sweep that missed its slot runs once, never in a burst
JOB_DEFAULTS = {
    "coalesce": True,
    "max_instances": 1,
    "misfire_grace_time": 60,
}


class SchedulerService:
    """
    Owns one AsyncIOScheduler bound to the running loop.

    Jobs live in memory only: the composition root registers them again on
    every start, so nothing needs to survive a restart.
    """

    def __init__(self, timezone: str = "UTC"):
        self.timezone = timezone
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.running = False

    def initialize(self):
        self.scheduler = AsyncIOScheduler(
            jobstores={"default": MemoryJobStore()},
            executors={"default": AsyncIOExecutor()},
            job_defaults=JOB_DEFAULTS,
            timezone=self.timezone,
        )
        logger.debug("Scheduler initialized")

    def _require_scheduler(self) -> AsyncIOScheduler:
        if not self.scheduler:
            raise RuntimeError("Scheduler not initialized. Call initialize() first.")
        return self.scheduler

    def start(self):
        self._require_scheduler().start()
        self.running = True
        logger.info("Scheduler started", jobs=[job.id for job in self.get_jobs()])

    def stop(self):
        """Stop without waiting for running jobs; shutdown drains the store itself"""
        if not (self.scheduler and self.running):
            return
        try:
            self.scheduler.shutdown(wait=False)
        except Exception as e:
            logger.error(f"Failed to stop scheduler: {e}")
        self.running = False
        logger.info("Scheduler stopped")

    def add_interval_job(
        self,
        func: Callable[..., Any],
        minutes: float = 0,
        seconds: float = 0,
        job_id: Optional[str] = None,
        **kwargs: Any,
    ):
        """Run ``func`` every ``minutes``/``seconds``; an existing job with the same id is replaced"""
        scheduler = self._require_scheduler()
        scheduler.add_job(
            func,
            trigger=IntervalTrigger(minutes=minutes, seconds=seconds),
            id=job_id,
            replace_existing=True,
            **kwargs,
        )
        logger.debug(f"Interval job added: {job_id or func.__name__} every {minutes}m{seconds}s")

    def get_jobs(self) -> List[Any]:
        if not self.scheduler:
            return []
        return self.scheduler.get_jobs()
