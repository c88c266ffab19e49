"""
Cron scheduling of health sweeps and, optionally, scrape runs.

The core never depends on this module: the scheduler only calls the same
service operations that the CLI exposes.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from scholarguard.exceptions import ScholarGuardError

logger = structlog.get_logger(__name__)

SWEEP_JOB_ID = "health_sweep"
SCRAPE_JOB_ID = "scrape_run"

JobCallable = Callable[[], Awaitable[Any]]


class SweepScheduler:
    """
    Wraps an ``AsyncIOScheduler`` with the sweep job and an optional scrape job.

    Both jobs run at most one instance at a time and coalesce missed runs.
    """

    def __init__(
        self,
        sweep: JobCallable,
        *,
        sweep_cron: str = "0 2 * * *",
        timezone: str = "UTC",
        scrape: Optional[JobCallable] = None,
        scrape_cron: Optional[str] = None,
    ):
        self._sweep = sweep
        self._scrape = scrape
        self.sweep_cron = sweep_cron
        self.scrape_cron = scrape_cron
        self.timezone = timezone
        self._scheduler = AsyncIOScheduler(
            timezone=timezone,
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 3600,
            },
        )
        self._register_jobs()

    def _register_jobs(self) -> None:
        self._scheduler.add_job(
            self._run_job,
            trigger=CronTrigger.from_crontab(self.sweep_cron, timezone=self.timezone),
            args=[SWEEP_JOB_ID, self._sweep],
            id=SWEEP_JOB_ID,
            name=f"Health sweep ({self.sweep_cron})",
            replace_existing=True,
        )
        if self._scrape is not None and self.scrape_cron:
            self._scheduler.add_job(
                self._run_job,
                trigger=CronTrigger.from_crontab(self.scrape_cron, timezone=self.timezone),
                args=[SCRAPE_JOB_ID, self._scrape],
                id=SCRAPE_JOB_ID,
                name=f"Scrape run ({self.scrape_cron})",
                replace_existing=True,
            )

    async def _run_job(self, job_id: str, job: JobCallable) -> None:
        logger.info("Scheduled job starting", job=job_id)
        try:
            await job()
        except ScholarGuardError as e:
            logger.error("Scheduled job failed", job=job_id, error=str(e))
            return
        logger.info("Scheduled job finished", job=job_id)

    def start(self) -> None:
        """Start the scheduler on the running event loop."""
        self._scheduler.start()
        for job in self.jobs():
            logger.info("Scheduled job registered", job=job["id"], next_run=job["next_run_time"])

    def shutdown(self, wait: bool = False) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info("Scheduler shut down")

    @property
    def running(self) -> bool:
        return bool(self._scheduler.running)

    def jobs(self) -> List[Dict[str, Any]]:
        return [
            {
                "id": job.id,
                "name": job.name,
                "next_run_time": getattr(job, "next_run_time", None),
                "trigger": str(job.trigger),
            }
            for job in self._scheduler.get_jobs()
        ]
