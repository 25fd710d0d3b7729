"""
State Manager

Manages job state transitions and persistence.
The database is the source of truth; Redis caches job state for status reads.
Every transition is a compare-and-set on the current status so concurrent
workers, schedulers and the reaper never overwrite each other.
"""
import json
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import select

from ..errors import JobStatePersistenceError
from .models import ACTIVE_STATUSES, Job, JobExecution, JobKind, JobStatus, Site, utcnow

logger = logging.getLogger(__name__)


def job_state(job: Job) -> Dict[str, Any]:
    """Serializable view of a job for the API and the status cache."""
    return {
        "id": job.id,
        "site_id": job.site_id,
        "device": job.device,
        "job_kind": job.job_kind,
        "status": job.status,
        "priority": job.priority,
        "attempts": job.attempts,
        "max_attempts": job.max_attempts,
        "error": job.error,
        "error_category": job.error_category,
        "created_at": job.created_at.isoformat() if job.created_at else None,
        "updated_at": job.updated_at.isoformat() if job.updated_at else None,
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
    }


class StateManager:
    """
    Reads and writes job and site state.

    Database failures surface as JobStatePersistenceError; cache failures are
    logged and fall through to the database.
    """

    def __init__(self, redis_client: redis.Redis, db):
        """
        Initialize state manager.

        Args:
            redis_client: Redis async client for caching
            db: Database instance (not just engine)
        """
        self.redis = redis_client
        self.db = db
        self.cache_prefix = "perfwatch:job:state:"
        self.cache_ttl = 3600  # 1 hour cache TTL

    # Sites

    async def get_site(self, site_id: str) -> Optional[Site]:
        try:
            async with self.db.session() as session:
                return await session.get(Site, site_id)
        except SQLAlchemyError as e:
            raise JobStatePersistenceError(f"Failed to load site {site_id}: {e}") from e

    async def list_monitored_sites(self) -> List[Site]:
        try:
            async with self.db.session() as session:
                statement = select(Site).where(Site.monitoring_enabled == True).order_by(Site.id)  # noqa: E712
                result = await session.execute(statement)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise JobStatePersistenceError(f"Failed to list monitored sites: {e}") from e

    # Jobs

    async def create_job(
        self,
        site_id: str,
        device: str,
        priority: int,
        max_attempts: int,
        timeout_seconds: float,
    ) -> Optional[Job]:
        """
        Insert a pending job for (site_id, device).

        Returns:
            The new Job, or None when the pair already has an active job
        """
        now = utcnow()
        job = Job(
            id=str(uuid.uuid4()),
            site_id=site_id,
            device=device,
            job_kind=JobKind.COLLECT_METRICS.value,
            priority=int(priority),
            status=JobStatus.PENDING.value,
            max_attempts=max_attempts,
            timeout_seconds=timeout_seconds,
            scheduled_for=now,
            created_at=now,
            updated_at=now,
        )
        try:
            async with self.db.session() as session:
                session.add(job)
                await session.commit()
        except IntegrityError:
            logger.debug(f"Active job already exists for {site_id}/{device}")
            return None
        except SQLAlchemyError as e:
            raise JobStatePersistenceError(f"Failed to create job for {site_id}/{device}: {e}") from e

        logger.info(f"Created job {job.id} for {site_id}/{device}")
        return job

    async def get_job(self, job_id: str) -> Optional[Job]:
        try:
            async with self.db.session() as session:
                return await session.get(Job, job_id)
        except SQLAlchemyError as e:
            raise JobStatePersistenceError(f"Failed to load job {job_id}: {e}") from e

    async def transition_job(
        self,
        job_id: str,
        from_status: JobStatus,
        to_status: JobStatus,
        **fields: Any,
    ) -> bool:
        """
        Move a job from ``from_status`` to ``to_status`` if it is still there.

        Args:
            job_id: The job ID
            from_status: Status the caller observed
            to_status: New status
            **fields: Additional columns to write with the transition

        Returns:
            True if this call performed the transition, False if the job was
            no longer in ``from_status``
        """
        values = dict(fields)
        values["status"] = to_status.value
        values.setdefault("updated_at", utcnow())
        statement = (
            update(Job)
            .where(Job.id == job_id, Job.status == from_status.value)
            .values(**values)
        )
        try:
            async with self.db.session() as session:
                result = await session.execute(statement)
                await session.commit()
        except SQLAlchemyError as e:
            raise JobStatePersistenceError(
                f"Failed to move job {job_id} from {from_status.value} to {to_status.value}: {e}"
            ) from e

        if result.rowcount != 1:
            logger.debug(f"Job {job_id} is no longer {from_status.value}; skipped move to {to_status.value}")
            return False

        await self._invalidate_cache(job_id)
        logger.info(f"Job {job_id}: {from_status.value} -> {to_status.value}")
        return True

    async def has_active_job(self, site_id: str, device: str) -> bool:
        statement = select(Job.id).where(
            Job.site_id == site_id,
            Job.device == device,
            Job.status.in_([s.value for s in ACTIVE_STATUSES]),
        )
        try:
            async with self.db.session() as session:
                result = await session.execute(statement)
                return result.first() is not None
        except SQLAlchemyError as e:
            raise JobStatePersistenceError(f"Failed to check active job for {site_id}/{device}: {e}") from e

    async def list_jobs_older_than(self, statuses: Iterable[JobStatus], cutoff: datetime) -> List[Job]:
        """Jobs in one of ``statuses`` whose last transition is before ``cutoff``."""
        statement = select(Job).where(
            Job.status.in_([s.value for s in statuses]),
            Job.updated_at < cutoff,
        )
        try:
            async with self.db.session() as session:
                result = await session.execute(statement)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise JobStatePersistenceError(f"Failed to list stale jobs: {e}") from e

    async def recent_jobs(
        self,
        limit: int = 50,
        site_id: Optional[str] = None,
        status: Optional[JobStatus] = None,
    ) -> List[Job]:
        statement = select(Job)
        if site_id:
            statement = statement.where(Job.site_id == site_id)
        if status:
            statement = statement.where(Job.status == status.value)
        statement = statement.order_by(Job.created_at.desc()).limit(limit)
        try:
            async with self.db.session() as session:
                result = await session.execute(statement)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise JobStatePersistenceError(f"Failed to list jobs: {e}") from e

    async def count_jobs_by_status(self) -> Dict[str, int]:
        statement = select(Job.status, func.count()).group_by(Job.status)
        try:
            async with self.db.session() as session:
                result = await session.execute(statement)
                return {status: count for status, count in result.all()}
        except SQLAlchemyError as e:
            raise JobStatePersistenceError(f"Failed to count jobs: {e}") from e

    async def record_execution(
        self,
        job_id: str,
        attempt: int,
        status: str,
        started_at: datetime,
        error: Optional[str] = None,
    ) -> JobExecution:
        completed_at = utcnow()
        execution = JobExecution(
            id=str(uuid.uuid4()),
            job_id=job_id,
            attempt=attempt,
            status=status,
            started_at=started_at,
            completed_at=completed_at,
            execution_time_ms=int((completed_at - started_at).total_seconds() * 1000),
            error=error,
        )
        try:
            async with self.db.session() as session:
                session.add(execution)
                await session.commit()
        except SQLAlchemyError as e:
            raise JobStatePersistenceError(f"Failed to record execution of job {job_id}: {e}") from e
        return execution

    async def list_executions(self, job_id: str) -> List[JobExecution]:
        statement = select(JobExecution).where(JobExecution.job_id == job_id).order_by(JobExecution.attempt)
        try:
            async with self.db.session() as session:
                result = await session.execute(statement)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise JobStatePersistenceError(f"Failed to list executions of job {job_id}: {e}") from e

    # Cached status reads

    async def get_job_state(self, job_id: str) -> Optional[Dict[str, Any]]:
        """
        Get job state (cached from Redis, fallback to DB).

        Args:
            job_id: The job ID

        Returns:
            Job state dict or None if not found
        """
        cache_key = f"{self.cache_prefix}{job_id}"
        try:
            cached = await self.redis.get(cache_key)
            if cached:
                logger.debug(f"Job {job_id} state from cache")
                return json.loads(cached)
        except RedisError as e:
            logger.warning(f"Error reading from cache for job {job_id}: {e}")

        job = await self.get_job(job_id)
        if job is None:
            return None

        state = job_state(job)
        await self._cache_job_state(job_id, state)
        return state

    async def _cache_job_state(self, job_id: str, state: Dict[str, Any]) -> None:
        try:
            await self.redis.setex(f"{self.cache_prefix}{job_id}", self.cache_ttl, json.dumps(state))
        except RedisError as e:
            logger.warning(f"Error caching job state for {job_id}: {e}")

    async def _invalidate_cache(self, job_id: str) -> None:
        try:
            await self.redis.delete(f"{self.cache_prefix}{job_id}")
        except RedisError as e:
            logger.warning(f"Error invalidating cache for {job_id}: {e}")
