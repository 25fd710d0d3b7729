"""
Metrics Store

Append-only time-series storage for aggregated samples, keyed by
(site, device, page, timestamp, metric).
"""
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

import structlog
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from ..control_plane.models import PageType
from .fields import METRIC_FIELDS
from .models import MetricSample, RawRun

logger = structlog.get_logger(__name__)


class MetricsStore:
    """Reads and writes MetricSample/RawRun rows through the shared Database."""

    def __init__(self, db):
        self.db = db

    async def append_sample(self, sample: MetricSample) -> MetricSample:
        """
        Persist a sample.

        A sample is unique per (job, page): if an earlier attempt of the same
        job already wrote one, that stored sample is returned unchanged.
        """
        try:
            async with self.db.session() as session:
                session.add(sample)
                await session.commit()
        except IntegrityError:
            existing = await self.sample_for_job(sample.job_id, sample.page_type)
            if existing is None:
                raise
            logger.info(
                "metric_sample_already_written", job_id=sample.job_id, page_type=sample.page_type, sample_id=existing.id
            )
            return existing

        logger.info(
            "metric_sample_written",
            sample_id=sample.id,
            site_id=sample.site_id,
            device=sample.device,
            page_type=sample.page_type,
            run_count=sample.run_count,
        )
        return sample

    async def save_raw_runs(self, runs: Iterable[RawRun]) -> int:
        runs = list(runs)
        if not runs:
            return 0
        async with self.db.session() as session:
            session.add_all(runs)
            await session.commit()
        return len(runs)

    async def sample_for_job(self, job_id: str, page_type: str = PageType.HOMEPAGE.value) -> Optional[MetricSample]:
        async with self.db.session() as session:
            result = await session.execute(
                select(MetricSample).where(MetricSample.job_id == job_id, MetricSample.page_type == page_type)
            )
            return result.scalars().first()

    async def samples_for_job(self, job_id: str) -> List[MetricSample]:
        async with self.db.session() as session:
            result = await session.execute(select(MetricSample).where(MetricSample.job_id == job_id))
            return list(result.scalars().all())

    async def latest_sample(
        self, site_id: str, device: str, page_type: str = PageType.HOMEPAGE.value
    ) -> Optional[MetricSample]:
        async with self.db.session() as session:
            statement = (
                select(MetricSample)
                .where(
                    MetricSample.site_id == site_id,
                    MetricSample.device == device,
                    MetricSample.page_type == page_type,
                )
                .order_by(MetricSample.timestamp.desc())
                .limit(1)
            )
            result = await session.execute(statement)
            return result.scalars().first()

    async def series_for_site(self, site_id: str, device: Optional[str] = None) -> List[Tuple[str, str]]:
        """Distinct (device, page_type) pairs with at least one sample."""
        statement = select(MetricSample.device, MetricSample.page_type).where(MetricSample.site_id == site_id)
        if device:
            statement = statement.where(MetricSample.device == device)
        async with self.db.session() as session:
            result = await session.execute(statement.distinct())
            return sorted((row[0], row[1]) for row in result.all())

    async def query_history(
        self,
        site_id: str,
        device: str,
        metric: str,
        since: datetime,
        until: Optional[datetime] = None,
        page_type: str = PageType.HOMEPAGE.value,
    ) -> List[float]:
        """
        Values of ``metric`` for the site/device/page with ``since <= timestamp``
        and, when given, ``timestamp < until``. Missing values are dropped.
        """
        if metric not in METRIC_FIELDS:
            raise ValueError(f"Unknown metric: {metric}")

        column = getattr(MetricSample, metric)
        statement = select(column).where(
            MetricSample.site_id == site_id,
            MetricSample.device == device,
            MetricSample.page_type == page_type,
            MetricSample.timestamp >= since,
            column.is_not(None),
        )
        if until is not None:
            statement = statement.where(MetricSample.timestamp < until)
        statement = statement.order_by(MetricSample.timestamp.desc())

        async with self.db.session() as session:
            result = await session.execute(statement)
            return [float(value) for value in result.scalars().all()]
