"""Grid scan scheduler built on APScheduler's asyncio scheduler."""

import logging
from typing import Any, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from src.modules.local_grid.orchestrator import ScanOrchestrator

logger = logging.getLogger(__name__)

DUE_SCANS_JOB = "run_due_scans"
SWEEP_JOB = "sweep_stale_scans"


def parse_cron(cron: str, timezone: str = "UTC") -> CronTrigger:
    """Build a trigger from a 5-field cron expression (min hour day month weekday)."""
    parts = cron.strip().split()
    if len(parts) != 5:
        raise ValueError(f"Cron expression must have 5 fields, got {len(parts)}: {cron!r}")
    return CronTrigger(
        minute=parts[0],
        hour=parts[1],
        day=parts[2],
        month=parts[3],
        day_of_week=parts[4],
        timezone=timezone,
    )


class ScanScheduler:
    """Recurring jobs for the grid tracker: the due-campaign run and the stale sweep.

    Jobs run on the application's event loop so they share the process-wide
    lookup limiter and scan slots with manually started scans.  ``start``
    must be called from inside a running loop.

    Usage::

        sched = ScanScheduler(orchestrator, scan_cron="0 6 * * *")
        sched.register_default_jobs()
        sched.start()
        ...
        sched.stop()
    """

    def __init__(
        self,
        orchestrator: ScanOrchestrator,
        timezone: str = "UTC",
        scan_cron: str = "0 6 * * *",
        sweep_interval_minutes: int = 15,
        due_batch_size: int = 20,
    ):
        self._orchestrator = orchestrator
        self._timezone = timezone
        self._scan_cron = scan_cron
        self._sweep_interval = sweep_interval_minutes
        self._batch_size = due_batch_size
        self._scheduler = AsyncIOScheduler(
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 3600,
            },
            timezone=timezone,
        )
        self._running = False
        logger.info(
            "ScanScheduler initialized (cron=%s, sweep=%dmin, tz=%s)",
            scan_cron, sweep_interval_minutes, timezone,
        )

    @property
    def is_running(self) -> bool:
        return self._running

    async def run_due_scans(self) -> int:
        outcomes = await self._orchestrator.run_due_scans(limit=self._batch_size)
        logger.info("Scheduled run finished: %d scans completed", len(outcomes))
        return len(outcomes)

    async def sweep_stale_scans(self) -> int:
        swept = self._orchestrator.sweep_stale_scans()
        return len(swept)

    def register_default_jobs(self) -> None:
        self.add_cron_job(DUE_SCANS_JOB, self.run_due_scans, self._scan_cron)
        self._scheduler.add_job(
            self.sweep_stale_scans,
            trigger=IntervalTrigger(minutes=self._sweep_interval, timezone=self._timezone),
            id=SWEEP_JOB,
            replace_existing=True,
        )
        logger.info("Job added: %s [every %d min]", SWEEP_JOB, self._sweep_interval)

    def add_cron_job(
        self,
        job_id: str,
        func: Callable,
        cron: str,
        kwargs: Optional[dict[str, Any]] = None,
    ) -> None:
        """Add or replace a cron-triggered job."""
        self._scheduler.add_job(
            func,
            trigger=parse_cron(cron, self._timezone),
            id=job_id,
            kwargs=kwargs or {},
            replace_existing=True,
        )
        logger.info("Job added: %s [%s]", job_id, cron)

    def start(self) -> None:
        if self._running:
            logger.warning("Scheduler is already running.")
            return
        self._scheduler.start()
        self._running = True
        logger.info("Scheduler started.")

    def stop(self, wait: bool = False) -> None:
        if not self._running:
            return
        self._scheduler.shutdown(wait=wait)
        self._running = False
        logger.info("Scheduler stopped.")

    def list_jobs(self) -> list[dict[str, Any]]:
        result = []
        for job in self._scheduler.get_jobs():
            # Jobs added before start() have no computed next run yet.
            next_run = getattr(job, "next_run_time", None)
            result.append({
                "id": job.id,
                "trigger": str(job.trigger),
                "next_run_time": next_run.isoformat() if next_run else None,
            })
        return result
