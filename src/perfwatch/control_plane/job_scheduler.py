# src/perfwatch/control_plane/job_scheduler.py
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..config import PerfwatchSettings
from ..errors import (
    JobRetriesExhausted,
    JobStuck,
    JobTimedOut,
    PerfwatchError,
    SiteNotFound,
    error_category,
)
from .events import JobEvent, JobEventBus, JobEventType, JobOutcome
from .idempotency_engine import IdempotencyEngine
from .models import ACTIVE_STATUSES, Job, JobPriority, JobStatus, Site, utcnow
from .queue_manager import QueueManager
from .retry import RetryPolicy
from .state_manager import StateManager, job_state

logger = logging.getLogger(__name__)

JobRunner = Callable[[Job], Awaitable[Any]]


class JobScheduler:
    """
    Creates measurement jobs, feeds them to the queue and runs them on a
    fixed pool of worker coroutines.

    The runner is any ``async (job) -> Any`` callable; in production it is
    ``MeasurementPipeline.run``.
    """

    def __init__(
        self,
        state_manager: StateManager,
        queue_manager: QueueManager,
        runner: JobRunner,
        settings: PerfwatchSettings,
        retry_policy: Optional[RetryPolicy] = None,
        event_bus: Optional[JobEventBus] = None,
        idempotency_engine: Optional[IdempotencyEngine] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.state_manager = state_manager
        self.queue_manager = queue_manager
        self.runner = runner
        self.settings = settings
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings.retry)
        self.events = event_bus or JobEventBus()
        self.idempotency_engine = idempotency_engine
        self._clock = clock

        self._workers: List[asyncio.Task] = []
        self._running_jobs: Dict[str, str] = {}
        self._shutdown_event = asyncio.Event()

    # Scheduling

    async def schedule_all(self, priority: JobPriority = JobPriority.NORMAL) -> List[str]:
        """
        Create and enqueue one job per monitored site and device profile.

        Pairs that already have an active job are skipped, so concurrent
        calls never create duplicates.

        Returns:
            Ids of the jobs this call created
        """
        sites = await self.state_manager.list_monitored_sites()
        job_ids: List[str] = []
        for site in sites:
            job_ids.extend(await self._schedule_devices(site, priority))

        logger.info(f"Scheduled {len(job_ids)} job(s) for {len(sites)} site(s)")
        return job_ids

    async def schedule_site(self, site_id: str, priority: JobPriority = JobPriority.HIGH) -> List[str]:
        site = await self.state_manager.get_site(site_id)
        if site is None:
            raise SiteNotFound(f"Site {site_id} not found")
        return await self._schedule_devices(site, priority)

    async def _schedule_devices(self, site: Site, priority: JobPriority) -> List[str]:
        job_ids = []
        for device in self.settings.device_profiles:
            if await self.state_manager.has_active_job(site.id, device):
                continue
            job = await self.state_manager.create_job(
                site_id=site.id,
                device=device,
                priority=priority,
                max_attempts=self.retry_policy.max_attempts,
                timeout_seconds=self.retry_policy.timeout_seconds,
            )
            if job is None:
                continue
            await self.events.publish(JobEvent(JobEventType.SCHEDULED, job.id, job.site_id, job.device))
            if await self.enqueue(job.id):
                job_ids.append(job.id)
        return job_ids

    async def enqueue(self, job_id: str, priority: Optional[int] = None) -> Optional[str]:
        """
        Move a pending job to ``queued`` and append it to the stream.

        Returns:
            Queue message id, or None if the job was not pending
        """
        job = await self.state_manager.get_job(job_id)
        if job is None or job.status != JobStatus.PENDING.value:
            return None
        if not await self.state_manager.transition_job(job_id, JobStatus.PENDING, JobStatus.QUEUED):
            return None
        return await self.queue_manager.enqueue(
            job_id,
            priority if priority is not None else job.priority,
            job.site_id,
            job.device,
        )

    # Execution

    async def process_job(self, job_id: str) -> JobOutcome:
        """
        Run one delivery of a job: claim it, run it under the timeout, then
        complete, requeue or fail it.
        """
        job = await self.state_manager.get_job(job_id)
        if job is None:
            logger.error(f"Job {job_id} not found")
            return JobOutcome(job_id=job_id, status="missing", attempt=0, skipped=True)
        if job.status != JobStatus.QUEUED.value:
            logger.info(f"Job {job_id} is {job.status}, not queued; skipping delivery")
            return JobOutcome(job_id=job_id, status=job.status, attempt=job.attempts, skipped=True)

        attempt = job.attempts + 1
        started_at = utcnow()
        claimed = await self.state_manager.transition_job(
            job_id,
            JobStatus.QUEUED,
            JobStatus.RUNNING,
            started_at=started_at,
            attempts=attempt,
        )
        if not claimed:
            return JobOutcome(job_id=job_id, status=JobStatus.RUNNING.value, attempt=job.attempts, skipped=True)

        job.status = JobStatus.RUNNING.value
        job.attempts = attempt
        await self.events.publish(JobEvent(JobEventType.STARTED, job.id, job.site_id, job.device, attempt))

        timeout = job.timeout_seconds or self.retry_policy.timeout_seconds
        error: Optional[BaseException] = None
        self._running_jobs[job_id] = job.site_id
        try:
            await asyncio.wait_for(self.runner(job), timeout=timeout)
        except asyncio.TimeoutError:
            error = JobTimedOut(f"Attempt {attempt} exceeded {timeout}s")
        except Exception as e:
            error = e
        finally:
            self._running_jobs.pop(job_id, None)

        if error is None:
            await self.state_manager.record_execution(job_id, attempt, "success", started_at)
            return await self._complete(job)

        execution_status = "timed_out" if isinstance(error, JobTimedOut) else "failed"
        await self.state_manager.record_execution(job_id, attempt, execution_status, started_at, error=str(error))
        return await self._handle_failure(job, error)

    async def _complete(self, job: Job) -> JobOutcome:
        done = await self.state_manager.transition_job(
            job.id,
            JobStatus.RUNNING,
            JobStatus.COMPLETED,
            completed_at=utcnow(),
            error=None,
            error_category=None,
        )
        if not done:
            return await self._lost_claim(job)

        logger.info(f"Job {job.id} completed on attempt {job.attempts}")
        await self.events.publish(JobEvent(JobEventType.COMPLETED, job.id, job.site_id, job.device, job.attempts))
        return JobOutcome(job_id=job.id, status=JobStatus.COMPLETED.value, attempt=job.attempts)

    async def _handle_failure(self, job: Job, error: BaseException) -> JobOutcome:
        attempt = job.attempts
        message = str(error)
        category = error_category(error)

        if self.retry_policy.should_retry(attempt, error) and attempt < job.max_attempts:
            delay = self.retry_policy.backoff(attempt)
            requeued = await self.state_manager.transition_job(
                job.id,
                JobStatus.RUNNING,
                JobStatus.QUEUED,
                error=message,
                error_category=category,
            )
            if not requeued:
                return await self._lost_claim(job)

            await self.queue_manager.requeue(job.id, job.priority, job.site_id, job.device, delay_seconds=delay)
            logger.warning(
                f"Job {job.id} failed ({category}), will retry in {delay}s "
                f"(attempt {attempt}/{job.max_attempts})"
            )
            await self.events.publish(
                JobEvent(JobEventType.RETRYING, job.id, job.site_id, job.device, attempt, message, category)
            )
            return JobOutcome(
                job_id=job.id,
                status=JobStatus.QUEUED.value,
                attempt=attempt,
                error=message,
                error_category=category,
                retry_in_seconds=delay,
            )

        if attempt > 1 and not isinstance(error, self.retry_policy.non_retryable):
            exhausted = JobRetriesExhausted(f"{category} after {attempt} attempts: {message}")
            message, category = exhausted.message, exhausted.category

        failed = await self.state_manager.transition_job(
            job.id,
            JobStatus.RUNNING,
            JobStatus.FAILED,
            completed_at=utcnow(),
            error=message,
            error_category=category,
        )
        if not failed:
            return await self._lost_claim(job)

        logger.error(f"Job {job.id} failed after {attempt} attempt(s): {message}")
        await self.events.publish(
            JobEvent(JobEventType.FAILED, job.id, job.site_id, job.device, attempt, message, category)
        )
        return JobOutcome(
            job_id=job.id,
            status=JobStatus.FAILED.value,
            attempt=attempt,
            error=message,
            error_category=category,
        )

    async def _lost_claim(self, job: Job) -> JobOutcome:
        """The job left ``running`` while this attempt ran (the reaper failed it)."""
        current = await self.state_manager.get_job(job.id)
        status = current.status if current else "missing"
        logger.warning(f"Job {job.id} moved to {status} during attempt {job.attempts}; result discarded")
        return JobOutcome(job_id=job.id, status=status, attempt=job.attempts, skipped=True)

    async def reap_stuck_jobs(self) -> int:
        """
        Fail active jobs whose last transition is older than the stuck-job
        threshold.

        Returns:
            Number of jobs this call failed
        """
        threshold = self.settings.reaper.stuck_job_threshold_seconds
        cutoff = self._clock() - timedelta(seconds=threshold)
        stale = await self.state_manager.list_jobs_older_than(ACTIVE_STATUSES, cutoff)

        reaped = 0
        for job in stale:
            stuck = JobStuck(f"No progress while {job.status} for more than {threshold}s")
            done = await self.state_manager.transition_job(
                job.id,
                JobStatus(job.status),
                JobStatus.FAILED,
                completed_at=utcnow(),
                error=stuck.message,
                error_category=stuck.category,
            )
            if not done:
                continue
            reaped += 1
            await self.events.publish(
                JobEvent(
                    JobEventType.REAPED, job.id, job.site_id, job.device, job.attempts, stuck.message, stuck.category
                )
            )

        if reaped:
            logger.warning(f"Reaped {reaped} stuck job(s)")
        return reaped

    # Workers

    async def start_workers(self, count: Optional[int] = None) -> None:
        count = self.settings.worker_count if count is None else count
        await self.queue_manager.ensure_consumer_groups()
        self._shutdown_event.clear()
        for i in range(count):
            worker_id = f"worker-{i + 1}"
            self._workers.append(asyncio.create_task(self._worker_loop(worker_id), name=worker_id))
        logger.info(f"Started {count} worker(s)")

    async def _worker_loop(self, worker_id: str) -> None:
        """Process jobs one at a time until shutdown."""
        logger.info(f"Starting worker {worker_id}")
        idle = self.settings.worker_poll_interval_seconds

        while not self._shutdown_event.is_set():
            try:
                if await self.queue_manager.is_paused():
                    await asyncio.sleep(idle)
                    continue

                await self.queue_manager.promote_due()
                job_id = await self.queue_manager.dequeue(worker_id)
                if not job_id:
                    await asyncio.sleep(idle)
                    continue

                await self.process_job(job_id)

            except asyncio.CancelledError:
                break
            except PerfwatchError as e:
                logger.error(f"Worker {worker_id} error: {e}")
                await asyncio.sleep(idle)
            except Exception as e:
                logger.error(f"Worker {worker_id} unexpected error: {e}", exc_info=True)
                await asyncio.sleep(idle)

        logger.info(f"Worker {worker_id} stopped")

    async def pause(self) -> None:
        """Stop workers from taking new jobs; in-flight jobs finish."""
        await self.queue_manager.set_paused(True)
        logger.info("Workers paused")

    async def resume(self) -> None:
        await self.queue_manager.set_paused(False)
        logger.info("Workers resumed")

    # Operator controls

    async def trigger_all(self, idempotency_key: Optional[str] = None) -> List[str]:
        """Schedule every monitored site now, ahead of the nightly run."""
        existing = await self._idempotent_lookup(idempotency_key)
        if existing is not None:
            return existing
        job_ids = await self.schedule_all(priority=JobPriority.HIGH)
        await self._idempotent_store(idempotency_key, job_ids)
        return job_ids

    async def trigger_site(self, site_id: str, idempotency_key: Optional[str] = None) -> List[str]:
        existing = await self._idempotent_lookup(idempotency_key)
        if existing is not None:
            return existing
        job_ids = await self.schedule_site(site_id, priority=JobPriority.HIGH)
        await self._idempotent_store(idempotency_key, job_ids)
        return job_ids

    async def _idempotent_lookup(self, idempotency_key: Optional[str]) -> Optional[List[str]]:
        if self.idempotency_engine is None or not idempotency_key:
            return None
        return await self.idempotency_engine.check(idempotency_key)

    async def _idempotent_store(self, idempotency_key: Optional[str], job_ids: List[str]) -> None:
        if self.idempotency_engine is not None and idempotency_key:
            await self.idempotency_engine.store(idempotency_key, job_ids)

    async def get_job_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        return await self.state_manager.get_job_state(job_id)

    async def recent_jobs(
        self,
        limit: int = 50,
        site_id: Optional[str] = None,
        status: Optional[JobStatus] = None,
    ) -> List[Dict[str, Any]]:
        jobs = await self.state_manager.recent_jobs(limit=limit, site_id=site_id, status=status)
        return [job_state(job) for job in jobs]

    async def get_queue_stats(self) -> Dict[str, Any]:
        return {
            "queue": await self.queue_manager.get_stats(),
            "jobs": {"by_status": await self.state_manager.count_jobs_by_status()},
            "running_jobs": len(self._running_jobs),
            "workers": len(self._workers),
        }

    async def shutdown(self, grace_seconds: float = 10.0) -> None:
        """Stop workers, letting in-flight jobs finish within ``grace_seconds``."""
        logger.info("Shutting down job scheduler...")
        self._shutdown_event.set()

        if self._workers:
            _, pending = await asyncio.wait(self._workers, timeout=grace_seconds)
            for worker in pending:
                worker.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        logger.info("Job scheduler shutdown complete")
