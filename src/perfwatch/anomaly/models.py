"""
Anomaly Data Models
"""
from sqlalchemy import Index, text
from sqlmodel import SQLModel, Field
from typing import Optional
from datetime import datetime
from enum import Enum as PyEnum

from ..control_plane.models import PageType, UTCTimestamp, utcnow


class AnomalyStatus(str, PyEnum):
    ACTIVE = "active"
    RESOLVED = "resolved"
    FALSE_POSITIVE = "false_positive"


class AnomalyRecord(SQLModel, table=True):
    """
    A detected regression of one metric for one site, device and page.

    ``expected_min``/``expected_max`` are the baseline range snapshot taken at
    (the latest) detection; auto-resolution compares against this snapshot.
    """
    __tablename__ = "anomalies"
    __table_args__ = (
        Index(
            "uq_anomalies_active_metric",
            "site_id",
            "device",
            "page_type",
            "metric",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    id: str = Field(primary_key=True, description="UUID anomaly identifier")
    site_id: str = Field(index=True)
    device: str = Field(index=True)
    page_type: str = Field(default=PageType.HOMEPAGE.value, index=True)
    metric: str = Field(index=True, description="Metric field name, e.g. 'load_delay'")
    sample_id: str = Field(description="MetricSample that triggered the latest detection")
    current_value: float
    expected_min: float
    expected_max: float
    baseline_mean: float
    baseline_stddev: float
    sample_count: int = Field(description="History points in the baseline window")
    deviation: float = Field(description="|z|, in standard deviations")
    confidence: float
    status: str = Field(default=AnomalyStatus.ACTIVE.value, index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCTimestamp, index=True)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCTimestamp)
    resolved_at: Optional[datetime] = Field(default=None, sa_type=UTCTimestamp)
