"""
Anomaly Detector

Rolling-window z-score detection of metric regressions per site, device and
page.

For every metric present on the latest sample, the trailing window of that
metric (excluding the sample itself) forms the baseline. A regression whose
|z| reaches the threshold is upserted as an active AnomalyRecord; newly
created records are handed to the configured sink, refreshed ones are not.
Improvements are classified but never recorded.
"""
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from ..config import DetectorSettings
from ..control_plane.models import utcnow
from ..metrics.models import MetricSample
from ..metrics.store import MetricsStore
from .models import AnomalyRecord, AnomalyStatus
from .sinks import AnomalySink
from .statistics import Classification, Verdict, classify

logger = structlog.get_logger(__name__)


class AnomalyDetector:

    def __init__(
        self,
        db,
        metrics_store: MetricsStore,
        settings: DetectorSettings,
        sink: Optional[AnomalySink] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.metrics_store = metrics_store
        self.settings = settings
        self.sink = sink
        self._clock = clock

    async def detect(self, site_id: str, device: Optional[str] = None) -> List[AnomalyRecord]:
        """
        Check the latest sample of each (device, page) series of ``site_id``
        (optionally only ``device``) and return the anomalies created or
        refreshed.
        """
        series = await self.metrics_store.series_for_site(site_id, device)
        if not series:
            logger.info("anomaly_detection_no_samples", site_id=site_id, device=device)

        records: List[AnomalyRecord] = []
        for dev, page_type in series:
            sample = await self.metrics_store.latest_sample(site_id, dev, page_type)
            if sample is not None:
                records.extend(await self.detect_sample(sample))

        if records:
            logger.info("anomalies_detected", site_id=site_id, count=len(records))
        return records

    async def detect_sample(self, sample: MetricSample) -> List[AnomalyRecord]:
        since = sample.timestamp - timedelta(days=self.settings.window_days)
        records: List[AnomalyRecord] = []

        for metric, value in sample.metric_values().items():
            if value is None:
                continue

            history = await self.metrics_store.query_history(
                sample.site_id,
                sample.device,
                metric,
                since=since,
                until=sample.timestamp,
                page_type=sample.page_type,
            )
            result = classify(
                metric,
                value,
                history,
                min_samples=self.settings.min_samples,
                z_threshold=self.settings.z_threshold,
            )

            if result.verdict is Verdict.SKIPPED:
                logger.debug(
                    "anomaly_check_skipped",
                    site_id=sample.site_id,
                    device=sample.device,
                    page_type=sample.page_type,
                    metric=metric,
                    reason=result.skip_reason.value,
                    history=len(history),
                )
                continue
            if result.verdict is Verdict.ANOMALOUS_IMPROVEMENT:
                logger.info(
                    "metric_improved",
                    site_id=sample.site_id,
                    device=sample.device,
                    page_type=sample.page_type,
                    metric=metric,
                    value=value,
                    z_score=result.z_score,
                )
                continue
            if result.verdict is Verdict.NORMAL:
                continue

            record, created = await self._upsert(sample, result)
            records.append(record)
            if created and self.sink is not None:
                await self.sink.emit(record)

        return records

    async def _upsert(self, sample: MetricSample, result: Classification) -> Tuple[AnomalyRecord, bool]:
        """Refresh the active record for the series in place, or create one. True when created."""
        stats = result.stats
        values = {
            "sample_id": sample.id,
            "current_value": result.current,
            "expected_min": stats.expected_min,
            "expected_max": stats.expected_max,
            "baseline_mean": stats.mean,
            "baseline_stddev": stats.stddev,
            "sample_count": stats.count,
            "deviation": abs(result.z_score),
            "confidence": result.confidence,
        }

        existing = await self._refresh_active(sample, result.metric, values)
        if existing is not None:
            return existing, False

        now = self._clock()
        record = AnomalyRecord(
            id=str(uuid.uuid4()),
            site_id=sample.site_id,
            device=sample.device,
            page_type=sample.page_type,
            metric=result.metric,
            status=AnomalyStatus.ACTIVE.value,
            created_at=now,
            updated_at=now,
            **values,
        )
        try:
            async with self.db.session() as session:
                session.add(record)
                await session.commit()
        except IntegrityError:
            # Another detection created the active record first
            existing = await self._refresh_active(sample, result.metric, values)
            if existing is None:
                raise
            return existing, False

        logger.info(
            "anomaly_created",
            anomaly_id=record.id,
            site_id=record.site_id,
            device=record.device,
            page_type=record.page_type,
            metric=record.metric,
            deviation=record.deviation,
            confidence=record.confidence,
        )
        return record, True

    async def _refresh_active(self, sample: MetricSample, metric: str, values: Dict) -> Optional[AnomalyRecord]:
        async with self.db.session() as session:
            statement = select(AnomalyRecord).where(
                AnomalyRecord.site_id == sample.site_id,
                AnomalyRecord.device == sample.device,
                AnomalyRecord.page_type == sample.page_type,
                AnomalyRecord.metric == metric,
                AnomalyRecord.status == AnomalyStatus.ACTIVE.value,
            )
            result = await session.execute(statement)
            existing = result.scalars().first()
            if existing is None:
                return None

            for key, value in values.items():
                setattr(existing, key, value)
            existing.updated_at = self._clock()
            session.add(existing)
            await session.commit()

        logger.info("anomaly_refreshed", anomaly_id=existing.id, metric=metric, deviation=existing.deviation)
        return existing

    async def auto_resolve(self, site_id: Optional[str] = None) -> int:
        """
        Resolve active anomalies older than the grace period whose metric has
        returned inside the expected range stored at detection time.
        """
        cutoff = self._clock() - timedelta(days=self.settings.resolve_grace_days)
        statement = select(AnomalyRecord).where(
            AnomalyRecord.status == AnomalyStatus.ACTIVE.value,
            AnomalyRecord.created_at <= cutoff,
        )
        if site_id:
            statement = statement.where(AnomalyRecord.site_id == site_id)

        async with self.db.session() as session:
            result = await session.execute(statement)
            candidates = list(result.scalars().all())

        latest: Dict[Tuple[str, str, str], Optional[MetricSample]] = {}
        resolved = 0
        for anomaly in candidates:
            key = (anomaly.site_id, anomaly.device, anomaly.page_type)
            if key not in latest:
                latest[key] = await self.metrics_store.latest_sample(*key)
            sample = latest[key]
            if sample is None:
                continue

            current = getattr(sample, anomaly.metric, None)
            if current is None:
                continue
            if anomaly.expected_min <= current <= anomaly.expected_max:
                if await self._set_status(anomaly.id, AnomalyStatus.RESOLVED):
                    resolved += 1
                    logger.info(
                        "anomaly_auto_resolved",
                        anomaly_id=anomaly.id,
                        site_id=anomaly.site_id,
                        metric=anomaly.metric,
                        current_value=current,
                    )

        return resolved

    async def resolve(self, anomaly_id: str) -> bool:
        return await self._set_status(anomaly_id, AnomalyStatus.RESOLVED)

    async def mark_false_positive(self, anomaly_id: str) -> bool:
        return await self._set_status(anomaly_id, AnomalyStatus.FALSE_POSITIVE)

    async def _set_status(self, anomaly_id: str, status: AnomalyStatus) -> bool:
        """Move an active anomaly to ``status``; False if it is not active."""
        now = self._clock()
        statement = (
            update(AnomalyRecord)
            .where(AnomalyRecord.id == anomaly_id, AnomalyRecord.status == AnomalyStatus.ACTIVE.value)
            .values(status=status.value, resolved_at=now, updated_at=now)
        )
        async with self.db.session() as session:
            result = await session.execute(statement)
            await session.commit()
        return result.rowcount == 1

    async def active_anomalies(self, site_id: str) -> List[AnomalyRecord]:
        statement = (
            select(AnomalyRecord)
            .where(AnomalyRecord.site_id == site_id, AnomalyRecord.status == AnomalyStatus.ACTIVE.value)
            .order_by(AnomalyRecord.confidence.desc(), AnomalyRecord.created_at.desc())
        )
        async with self.db.session() as session:
            result = await session.execute(statement)
            return list(result.scalars().all())

    async def anomaly_trend(self, site_id: str, days: int = 30) -> Dict[str, object]:
        """Compare anomaly counts in the first and second half of ``days``."""
        now = self._clock()
        start = now - timedelta(days=days)
        middle = start + timedelta(days=days / 2)

        async def count_between(lower: datetime, upper: datetime, inclusive: bool) -> int:
            upper_clause = AnomalyRecord.created_at <= upper if inclusive else AnomalyRecord.created_at < upper
            statement = select(func.count()).select_from(AnomalyRecord).where(
                AnomalyRecord.site_id == site_id,
                AnomalyRecord.created_at >= lower,
                upper_clause,
            )
            async with self.db.session() as session:
                result = await session.execute(statement)
                return int(result.scalar_one())

        previous = await count_between(start, middle, inclusive=False)
        current = await count_between(middle, now, inclusive=True)

        difference = current - previous
        if difference > 1:
            trend = "increasing"
        elif difference < -1:
            trend = "decreasing"
        else:
            trend = "stable"
        return {"current_count": current, "previous_count": previous, "trend": trend}
