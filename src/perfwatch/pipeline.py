"""
Measurement Pipeline

The job body run by scheduler workers: measure every page of a site several
times on the job's device, store the raw runs and their per-field median, then
check the new samples for anomalies.
"""
import uuid
from datetime import datetime
from typing import Callable, Dict, List, Optional

import structlog

from .anomaly.detector import AnomalyDetector
from .collection.aggregator import RawRunResult, RunAggregator
from .config import PerfwatchSettings
from .control_plane.models import Job, utcnow
from .control_plane.state_manager import StateManager
from .errors import SiteNotFound
from .metrics.fields import METRIC_FIELDS
from .metrics.models import MetricSample, RawRun
from .metrics.store import MetricsStore

logger = structlog.get_logger(__name__)


class MeasurementPipeline:

    def __init__(
        self,
        state_manager: StateManager,
        aggregator: RunAggregator,
        metrics_store: MetricsStore,
        detector: Optional[AnomalyDetector],
        settings: PerfwatchSettings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.state_manager = state_manager
        self.aggregator = aggregator
        self.metrics_store = metrics_store
        self.detector = detector
        self.settings = settings
        self._clock = clock

    async def run(self, job: Job) -> List[MetricSample]:
        """
        Produce one MetricSample per page of the job's site.

        Pages run in order and a failed page fails the attempt. Pages an
        earlier attempt already stored are reused instead of measured again.
        """
        log = logger.bind(job_id=job.id, site_id=job.site_id, device=job.device, attempt=job.attempts)

        site = await self.state_manager.get_site(job.site_id)
        if site is None:
            raise SiteNotFound(f"Site {job.site_id} not found")

        stored: Dict[str, MetricSample] = {
            sample.page_type: sample for sample in await self.metrics_store.samples_for_job(job.id)
        }
        samples: List[MetricSample] = []
        for page_type, url in site.pages():
            sample = stored.get(page_type)
            if sample is None:
                sample = await self._measure(job, page_type, url, log)
            else:
                log.info("metric_sample_reused", sample_id=sample.id, page_type=page_type)
            samples.append(sample)

        if self.settings.detect_after_write and self.detector is not None:
            anomalies = 0
            for sample in samples:
                anomalies += len(await self.detector.detect_sample(sample))
            log.info("anomaly_check_complete", samples=len(samples), anomalies=anomalies)

        return samples

    async def _measure(self, job: Job, page_type: str, url: str, log) -> MetricSample:
        batch_id = str(uuid.uuid4())
        runs = await self.aggregator.collect_multiple(
            url,
            job.device,
            self.settings.collection.runs_per_measurement,
            batch_id,
        )
        await self.metrics_store.save_raw_runs(self._raw_rows(job, page_type, url, runs))

        fields = self.aggregator.aggregate(runs)
        sample = MetricSample(
            id=str(uuid.uuid4()),
            job_id=job.id,
            site_id=job.site_id,
            device=job.device,
            page_type=page_type,
            batch_id=batch_id,
            run_count=len(runs),
            timestamp=self._clock(),
            **fields,
        )
        sample = await self.metrics_store.append_sample(sample)
        log.info("measurement_stored", sample_id=sample.id, page_type=page_type, runs=len(runs), url=url)
        return sample

    @staticmethod
    def _raw_rows(job: Job, page_type: str, url: str, runs: List[RawRunResult]) -> List[RawRun]:
        return [
            RawRun(
                id=str(uuid.uuid4()),
                batch_id=run.batch_id,
                run_index=run.run_index,
                site_id=job.site_id,
                device=job.device,
                page_type=page_type,
                page_url=url,
                measured_at=run.measured_at,
                **{name: run.fields.get(name) for name in METRIC_FIELDS},
            )
            for run in runs
        ]

    async def detect_all(self) -> int:
        """
        Run detection over the latest samples of every monitored site.

        Used on a cadence when detection does not run after each write.
        Returns the number of anomalies created or refreshed.
        """
        if self.detector is None:
            return 0

        total = 0
        for site in await self.state_manager.list_monitored_sites():
            total += len(await self.detector.detect(site.id))
        logger.info("anomaly_sweep_complete", anomalies=total)
        return total
