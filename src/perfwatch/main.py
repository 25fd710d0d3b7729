"""
Perfwatch API

FastAPI application: wires the scheduler, workers, cadence and detector
together and exposes operator controls.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, status
from redis.asyncio import Redis

from .anomaly.detector import AnomalyDetector
from .anomaly.sinks import CompositeAnomalySink, LoggingAnomalySink, RedisAnomalyPublisher, anomaly_payload
from .collection.aggregator import RunAggregator
from .collection.orchestrator import CollectionOrchestrator
from .collection.provider import HttpMeasurementProvider, MeasurementProvider
from .config import PerfwatchSettings
from .control_plane.cadence import CadenceScheduler
from .control_plane.idempotency_engine import IdempotencyEngine
from .control_plane.job_scheduler import JobScheduler
from .control_plane.models import JobStatus
from .control_plane.queue_manager import QueueManager
from .control_plane.state_manager import StateManager
from .database import Database
from .errors import JobStatePersistenceError, SiteNotFound
from .metrics.store import MetricsStore
from .pipeline import MeasurementPipeline


def setup_logging() -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ]
    )
    logging.basicConfig(level=logging.INFO)


logger = structlog.get_logger(__name__)


def create_app(
    settings: Optional[PerfwatchSettings] = None,
    redis_client: Optional[Redis] = None,
    provider: Optional[MeasurementProvider] = None,
) -> FastAPI:
    """
    Build the application.

    Connections and components are created in the lifespan and kept on
    ``app.state``; ``redis_client`` and ``provider`` may be supplied to
    replace the ones built from settings.
    """
    settings = settings or PerfwatchSettings()
    setup_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("perfwatch_starting", config_version=settings.config_version)

        db = Database(settings)
        await db.init_models()
        redis = redis_client or Redis.from_url(settings.redis_url, decode_responses=True)
        measurement_provider = provider or HttpMeasurementProvider(settings.collection)

        state_manager = StateManager(redis, db)
        queue_manager = QueueManager(redis)
        await queue_manager.ensure_consumer_groups()

        metrics_store = MetricsStore(db)
        detector = AnomalyDetector(
            db,
            metrics_store,
            settings.detector,
            sink=CompositeAnomalySink([LoggingAnomalySink(), RedisAnomalyPublisher(redis)]),
        )
        orchestrator = CollectionOrchestrator(measurement_provider, settings.collection)
        pipeline = MeasurementPipeline(
            state_manager,
            RunAggregator(orchestrator, settings.collection),
            metrics_store,
            detector,
            settings,
        )
        scheduler = JobScheduler(
            state_manager,
            queue_manager,
            pipeline.run,
            settings,
            idempotency_engine=IdempotencyEngine(redis),
        )

        if settings.worker_count > 0:
            await scheduler.start_workers(settings.worker_count)

        cadence = CadenceScheduler()
        if settings.enable_cadence:
            cadence.register_defaults(
                settings,
                schedule_all=scheduler.schedule_all,
                reap_stuck_jobs=scheduler.reap_stuck_jobs,
                auto_resolve=detector.auto_resolve,
                detect_all=pipeline.detect_all,
            )
            await cadence.start()

        app.state.settings = settings
        app.state.scheduler = scheduler
        app.state.detector = detector
        app.state.cadence = cadence
        logger.info("perfwatch_ready", workers=settings.worker_count, cadence=settings.enable_cadence)

        yield

        logger.info("perfwatch_shutting_down")
        await cadence.stop()
        await scheduler.shutdown()
        await measurement_provider.aclose()
        await db.dispose()
        if redis_client is None:
            await redis.aclose()
        logger.info("perfwatch_stopped")

    app = FastAPI(
        title="Perfwatch API",
        description="Scheduled web-performance measurement and regression detection.",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.include_router(router)
    return app


def get_scheduler(request: Request) -> JobScheduler:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Scheduler not initialized")
    return scheduler


def get_detector(request: Request) -> AnomalyDetector:
    detector = getattr(request.app.state, "detector", None)
    if detector is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Detector not initialized")
    return detector


router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    settings: PerfwatchSettings = request.app.state.settings
    return {
        "status": "healthy",
        "service": "perfwatch",
        "workers": settings.worker_count,
        "cadence": request.app.state.cadence.list_jobs(),
    }


@router.post("/api/v1/collections", status_code=status.HTTP_202_ACCEPTED)
async def trigger_all(
    idempotency_key: Optional[str] = Header(default=None),
    scheduler: JobScheduler = Depends(get_scheduler),
):
    """Schedule every monitored site at high priority."""
    try:
        job_ids = await scheduler.trigger_all(idempotency_key=idempotency_key)
    except JobStatePersistenceError as e:
        logger.error("trigger_failed", error=str(e))
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.message)
    return {"job_ids": job_ids, "scheduled": len(job_ids)}


@router.post("/api/v1/sites/{site_id}/collections", status_code=status.HTTP_202_ACCEPTED)
async def trigger_site(
    site_id: str,
    idempotency_key: Optional[str] = Header(default=None),
    scheduler: JobScheduler = Depends(get_scheduler),
):
    try:
        job_ids = await scheduler.trigger_site(site_id, idempotency_key=idempotency_key)
    except SiteNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    except JobStatePersistenceError as e:
        logger.error("trigger_failed", site_id=site_id, error=str(e))
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.message)
    return {"site_id": site_id, "job_ids": job_ids, "scheduled": len(job_ids)}


@router.post("/api/v1/workers/pause")
async def pause_workers(scheduler: JobScheduler = Depends(get_scheduler)):
    await scheduler.pause()
    return {"paused": True}


@router.post("/api/v1/workers/resume")
async def resume_workers(scheduler: JobScheduler = Depends(get_scheduler)):
    await scheduler.resume()
    return {"paused": False}


@router.post("/api/v1/jobs/reap")
async def reap_stuck_jobs(scheduler: JobScheduler = Depends(get_scheduler)):
    return {"reaped": await scheduler.reap_stuck_jobs()}


@router.get("/api/v1/jobs/{job_id}")
async def get_job_status(job_id: str, scheduler: JobScheduler = Depends(get_scheduler)):
    status_info = await scheduler.get_job_status(job_id)
    if status_info is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Job {job_id} not found")
    return status_info


@router.get("/api/v1/jobs")
async def list_jobs(
    limit: int = 50,
    site_id: Optional[str] = None,
    job_status: Optional[JobStatus] = None,
    scheduler: JobScheduler = Depends(get_scheduler),
):
    jobs = await scheduler.recent_jobs(limit=limit, site_id=site_id, status=job_status)
    return {"jobs": jobs, "count": len(jobs)}


@router.get("/api/v1/queue/stats")
async def get_queue_stats(scheduler: JobScheduler = Depends(get_scheduler)):
    return await scheduler.get_queue_stats()


@router.get("/api/v1/sites/{site_id}/anomalies")
async def site_anomalies(site_id: str, detector: AnomalyDetector = Depends(get_detector)):
    anomalies = await detector.active_anomalies(site_id)
    return {
        "site_id": site_id,
        "anomalies": [anomaly_payload(record) for record in anomalies],
        "trend": await detector.anomaly_trend(site_id),
    }


@router.post("/api/v1/anomalies/{anomaly_id}/false-positive")
async def mark_false_positive(anomaly_id: str, detector: AnomalyDetector = Depends(get_detector)):
    if not await detector.mark_false_positive(anomaly_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No active anomaly {anomaly_id}")
    return {"id": anomaly_id, "status": "false_positive"}


@router.post("/api/v1/anomalies/{anomaly_id}/resolve")
async def resolve_anomaly(anomaly_id: str, detector: AnomalyDetector = Depends(get_detector)):
    if not await detector.resolve(anomaly_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No active anomaly {anomaly_id}")
    return {"id": anomaly_id, "status": "resolved"}


@router.post("/api/v1/anomalies/resolve")
async def auto_resolve(site_id: Optional[str] = None, detector: AnomalyDetector = Depends(get_detector)):
    return {"resolved": await detector.auto_resolve(site_id=site_id)}


# For running directly with python -m
if __name__ == "__main__":
    import uvicorn

    _settings = PerfwatchSettings()
    uvicorn.run(
        "perfwatch.main:create_app",
        factory=True,
        host=_settings.api_host,
        port=_settings.api_port,
        reload=False,
    )
