"""Cron scheduling shared by all watchers."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from apscheduler.job import Job
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

logger = logging.getLogger(__name__)


def validate_crontab(expression: str) -> str:
    """Raise ValueError if ``expression`` is not a valid 5-field crontab."""
    CronTrigger.from_crontab(expression)
    return expression


class SchedulerService:
    """Wrapper around APScheduler's AsyncIOScheduler."""

    def __init__(self) -> None:
        self.scheduler: Optional[AsyncIOScheduler] = None

    @property
    def running(self) -> bool:
        return self.scheduler is not None and self.scheduler.running

    def start(self) -> None:
        """Start the scheduler (must be called from the running event loop)."""
        if self.running:
            return
        self.scheduler = AsyncIOScheduler()
        self.scheduler.start()
        logger.info("Background scheduler started")

    def add_cron_job(
        self,
        job_id: str,
        func: Callable[..., Awaitable[Any]],
        cron: str,
        name: Optional[str] = None,
    ) -> Job:
        if not self.running:
            self.start()
        job = self.scheduler.add_job(
            func,
            CronTrigger.from_crontab(cron),
            id=job_id,
            name=name or job_id,
            replace_existing=True,
            max_instances=1,  # Prevent overlapping runs
            coalesce=True,
        )
        if job.next_run_time:
            logger.info(f"Job {job_id} scheduled ({cron}), next run at {job.next_run_time}")
        return job

    def remove_job(self, job_id: str) -> None:
        if self.scheduler is None:
            return
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            logger.debug(f"Job {job_id} already removed")

    async def stop(self) -> None:
        if self.scheduler is None:
            return
        try:
            self.scheduler.shutdown(wait=False)
            # Give event loop a chance to process shutdown
            await asyncio.sleep(0)
            logger.info("Background scheduler stopped")
        except RuntimeError as e:
            logger.error(f"Scheduler shutdown error: {e}")
        finally:
            self.scheduler = None
