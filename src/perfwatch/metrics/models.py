"""
Metrics Data Models

MetricSample is the aggregated, immutable measurement written once per page
of a successful job. RawRun keeps the individual runs that fed it for audit.
"""
from sqlalchemy import UniqueConstraint
from sqlmodel import SQLModel, Field
from typing import Optional, Dict
from datetime import datetime

from ..control_plane.models import PageType, UTCTimestamp, utcnow
from .fields import METRIC_FIELDS


class MetricFields(SQLModel):
    """Named numeric fields; ``None`` means the provider did not report it."""

    load_delay: Optional[float] = Field(default=None, description="Largest contentful paint (s)")
    visual_stability: Optional[float] = Field(default=None, description="Cumulative layout shift")
    paint_time: Optional[float] = Field(default=None, description="First contentful paint (s)")
    speed_index: Optional[float] = Field(default=None, description="Speed index (s)")
    blocking_time: Optional[float] = Field(default=None, description="Total blocking time (ms)")
    interactive_time: Optional[float] = Field(default=None, description="Time to interactive (s)")
    server_response_time: Optional[float] = Field(default=None, description="Time to first byte (ms)")
    byte_weight: Optional[float] = Field(default=None, description="Total transferred bytes")
    request_count: Optional[float] = Field(default=None, description="Number of requests")
    overall_score: Optional[float] = Field(default=None, description="Performance score (0-100)")

    def metric_values(self) -> Dict[str, Optional[float]]:
        return {name: getattr(self, name) for name in METRIC_FIELDS}


class MetricSample(MetricFields, table=True):
    __tablename__ = "metric_samples"
    __table_args__ = (UniqueConstraint("job_id", "page_type", name="uq_metric_samples_job_page"),)

    id: str = Field(primary_key=True, description="UUID sample identifier")
    job_id: str = Field(index=True, description="Job that produced this sample")
    site_id: str = Field(index=True)
    device: str = Field(index=True)
    page_type: str = Field(default=PageType.HOMEPAGE.value, index=True)
    batch_id: str = Field(description="Batch grouping the raw runs")
    run_count: int = Field(description="Number of successful runs aggregated")
    timestamp: datetime = Field(default_factory=utcnow, sa_type=UTCTimestamp, index=True)


class RawRun(MetricFields, table=True):
    __tablename__ = "raw_runs"

    id: str = Field(primary_key=True, description="UUID run identifier")
    batch_id: str = Field(index=True)
    run_index: int = Field(description="1-based index within the batch")
    site_id: str = Field(index=True)
    device: str
    page_type: str = Field(default=PageType.HOMEPAGE.value)
    page_url: str = Field(description="URL measured by this run")
    measured_at: datetime = Field(default_factory=utcnow, sa_type=UTCTimestamp)
