"""
Control Plane Data Models

Defines the Site, Job and JobExecution models for the scheduler.
These models are the source of truth for job state in the database.
"""
from sqlalchemy import DateTime, Index, text
from sqlalchemy.types import TypeDecorator
from sqlmodel import SQLModel, Field
from typing import List, Optional, Tuple
from datetime import datetime, timezone
from enum import Enum as PyEnum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCTimestamp(TypeDecorator):
    """
    Timezone-aware UTC datetime column.

    Values are converted to UTC on write. Backends without offsets (SQLite)
    return naive values, which are read back as UTC.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class JobStatus(str, PyEnum):
    """Job status enumeration."""
    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_STATUSES = (JobStatus.PENDING, JobStatus.QUEUED, JobStatus.RUNNING)


class JobPriority(int, PyEnum):
    """Queue priority: operator triggers jump ahead of the nightly fan-out."""
    HIGH = 1
    NORMAL = 2


class JobKind(str, PyEnum):
    COLLECT_METRICS = "collect_metrics"


class PageType(str, PyEnum):
    HOMEPAGE = "homepage"
    CATEGORY = "category"
    PRODUCT = "product"


_ACTIVE_SQL = "status IN ('pending', 'queued', 'running')"


class Site(SQLModel, table=True):
    """
    A monitored site.

    Site management lives outside perfwatch; the pipeline only reads the
    page URLs and ``monitoring_enabled``.
    """
    __tablename__ = "sites"

    id: str = Field(primary_key=True, description="Site identifier")
    name: str = Field(description="Display name")
    url: str = Field(description="Homepage URL")
    category_url: Optional[str] = Field(default=None, description="Category listing page, measured when set")
    product_url: Optional[str] = Field(default=None, description="Product detail page, measured when set")
    monitoring_enabled: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCTimestamp)

    def pages(self) -> List[Tuple[str, str]]:
        """(page_type, url) for every page measured on each run, homepage first."""
        pages = [(PageType.HOMEPAGE.value, self.url)]
        if self.category_url:
            pages.append((PageType.CATEGORY.value, self.category_url))
        if self.product_url:
            pages.append((PageType.PRODUCT.value, self.product_url))
        return pages


class Job(SQLModel, table=True):
    """
    One unit of scheduled measurement work for a (site, device) pair.

    The partial unique index allows a single active job per pair, so two
    schedulers racing on the same pair cannot both insert and two workers
    can never run the same pair at once.
    """
    __tablename__ = "jobs"
    __table_args__ = (
        Index(
            "uq_jobs_active_site_device",
            "site_id",
            "device",
            unique=True,
            postgresql_where=text(_ACTIVE_SQL),
            sqlite_where=text(_ACTIVE_SQL),
        ),
    )

    id: str = Field(primary_key=True, description="UUID job identifier")
    site_id: str = Field(index=True, description="Reference to Site.id")
    device: str = Field(index=True, description="Device profile (e.g. 'mobile', 'desktop')")
    job_kind: str = Field(default=JobKind.COLLECT_METRICS.value, description="Job kind")
    priority: int = Field(default=JobPriority.NORMAL.value, description="Queue priority")
    status: str = Field(default=JobStatus.PENDING.value, index=True, description="Current job status")
    max_attempts: int = Field(default=3, description="Maximum attempts")
    attempts: int = Field(default=0, description="Attempts started so far")
    timeout_seconds: float = Field(default=600.0, description="Per-attempt timeout in seconds")
    error: Optional[str] = Field(default=None, description="Error message if failed")
    error_category: Optional[str] = Field(default=None, description="Error class, e.g. 'ProviderBlocked'")
    scheduled_for: datetime = Field(default_factory=utcnow, sa_type=UTCTimestamp)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCTimestamp, index=True)
    updated_at: datetime = Field(
        default_factory=utcnow, sa_type=UTCTimestamp, index=True, description="Last state transition"
    )
    started_at: Optional[datetime] = Field(default=None, sa_type=UTCTimestamp)
    completed_at: Optional[datetime] = Field(default=None, sa_type=UTCTimestamp)


class JobExecution(SQLModel, table=True):
    """
    Job execution history record.

    Tracks each execution attempt for a job, including retries.
    """
    __tablename__ = "job_executions"

    id: str = Field(primary_key=True, description="UUID execution identifier")
    job_id: str = Field(index=True, description="Reference to Job.id")
    attempt: int = Field(description="Attempt number (1, 2, 3, ...)")
    status: str = Field(description="'success', 'failed' or 'timed_out'")
    started_at: datetime = Field(default_factory=utcnow, sa_type=UTCTimestamp)
    completed_at: Optional[datetime] = Field(default=None, sa_type=UTCTimestamp)
    execution_time_ms: Optional[int] = Field(default=None, description="Execution duration in milliseconds")
    error: Optional[str] = Field(default=None, description="Error message if failed")
