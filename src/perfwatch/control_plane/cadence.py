"""
Time-based triggers.

Nightly collection, hourly reaping and daily auto-resolve. When detection
does not follow each write, a daily detection sweep is added.
"""

from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from ..config import PerfwatchSettings
from .models import utcnow

logger = structlog.get_logger(__name__)

COLLECTION_JOB = "nightly-collection"
REAPER_JOB = "stuck-job-reaper"
RESOLVE_JOB = "anomaly-auto-resolve"
DETECTION_JOB = "anomaly-detection-sweep"


def cron_trigger(expression: str, timezone: str = "UTC") -> CronTrigger:
    """Build a trigger from a 5-field "minute hour day month day_of_week" expression."""
    parts = expression.split()
    if len(parts) != 5:
        raise ValueError(f"Invalid cron expression: {expression}")
    return CronTrigger(
        minute=parts[0],
        hour=parts[1],
        day=parts[2],
        month=parts[3],
        day_of_week=parts[4],
        timezone=timezone,
    )


class CadenceScheduler:
    """
    Fires scheduler and detector entry points on a clock using APScheduler.

    Callbacks never run measurement jobs; those always run on the worker
    pool.
    """

    def __init__(self, scheduler: Optional[AsyncIOScheduler] = None):
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self.jobs: Dict[str, Dict[str, Any]] = {}
        self.running = False

    def register_defaults(
        self,
        settings: PerfwatchSettings,
        schedule_all: Callable[[], Awaitable[Any]],
        reap_stuck_jobs: Callable[[], Awaitable[Any]],
        auto_resolve: Callable[[], Awaitable[Any]],
        detect_all: Optional[Callable[[], Awaitable[Any]]] = None,
    ) -> None:
        self.add_cron_job(COLLECTION_JOB, schedule_all, settings.collection_cron, "Schedule all monitored sites")
        self.add_interval_job(
            REAPER_JOB, reap_stuck_jobs, settings.reaper.interval_seconds, "Fail jobs stuck in an active state"
        )
        self.add_cron_job(RESOLVE_JOB, auto_resolve, settings.resolve_cron, "Resolve recovered anomalies")
        if not settings.detect_after_write:
            if detect_all is None:
                raise ValueError("detect_after_write is off but no detection sweep was given")
            self.add_cron_job(DETECTION_JOB, detect_all, settings.detection_cron, "Detect anomalies for all sites")

    def add_cron_job(self, job_id: str, func: Callable, cron_expression: str, description: Optional[str] = None):
        trigger = cron_trigger(cron_expression)
        self._add(job_id, func, trigger, {"type": "cron", "expression": cron_expression}, description)
        logger.info("cadence_cron_added", job_id=job_id, cron=cron_expression)

    def add_interval_job(self, job_id: str, func: Callable, seconds: int, description: Optional[str] = None):
        trigger = IntervalTrigger(seconds=seconds)
        self._add(job_id, func, trigger, {"type": "interval", "seconds": seconds}, description)
        logger.info("cadence_interval_added", job_id=job_id, interval_seconds=seconds)

    def _add(self, job_id: str, func: Callable, trigger, info: Dict[str, Any], description: Optional[str]) -> None:
        if job_id in self.jobs:
            logger.warning("cadence_job_replaced", job_id=job_id)
            self.scheduler.remove_job(job_id)

        # A slow run must not overlap with the next firing of the same job
        job = self.scheduler.add_job(
            func=func,
            trigger=trigger,
            id=job_id,
            name=description or job_id,
            max_instances=1,
            coalesce=True,
        )
        self.jobs[job_id] = {"job": job, "description": description, "added_at": utcnow(), **info}

    async def start(self) -> None:
        if self.running:
            logger.warning("cadence_already_running")
            return
        self.scheduler.start()
        self.running = True
        logger.info("cadence_started", jobs=list(self.jobs))

    async def stop(self) -> None:
        if not self.running:
            return
        self.scheduler.shutdown(wait=False)
        self.running = False
        logger.info("cadence_stopped")

    def list_jobs(self) -> List[Dict[str, Any]]:
        listing = []
        for job_id, info in self.jobs.items():
            scheduled = self.scheduler.get_job(job_id)
            next_run: Optional[datetime] = getattr(scheduled, "next_run_time", None)
            listing.append(
                {
                    "job_id": job_id,
                    "type": info["type"],
                    "description": info["description"],
                    "next_run": next_run.isoformat() if next_run else None,
                }
            )
        return listing
