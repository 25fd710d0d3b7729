from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import fakeredis
import pytest
import pytest_asyncio

from perfwatch.collection.provider import MeasurementProvider, ProviderResponse
from perfwatch.config import CollectionSettings, PerfwatchSettings, RetrySettings
from perfwatch.control_plane.models import Site, utcnow
from perfwatch.database import Database
from perfwatch.metrics.models import MetricSample


class RecordingSleep:
    """Async sleep replacement that records requested delays and returns at once."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class ScriptedProvider(MeasurementProvider):
    """Answers submit/poll calls from queued responses, recording every call."""

    name = "scripted"

    def __init__(
        self,
        submits: Optional[List[ProviderResponse]] = None,
        polls: Optional[List[ProviderResponse]] = None,
        default: Optional[ProviderResponse] = None,
    ) -> None:
        self.submits = list(submits or [])
        self.polls = list(polls or [])
        self.default = default
        self.submit_calls: List[Dict[str, object]] = []
        self.poll_calls: List[Dict[str, object]] = []
        self.closed = False

    async def submit(self, url: str, device: str, bypass: bool = False) -> ProviderResponse:
        self.submit_calls.append({"url": url, "device": device, "bypass": bypass})
        if self.submits:
            return self.submits.pop(0)
        if self.default is not None:
            return self.default
        raise AssertionError("unexpected submit call")

    async def poll(self, poll_token: str, bypass: bool = False) -> ProviderResponse:
        self.poll_calls.append({"token": poll_token, "bypass": bypass})
        if self.polls:
            return self.polls.pop(0)
        raise AssertionError("unexpected poll call")

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def settings(tmp_path) -> PerfwatchSettings:
    return PerfwatchSettings(
        database_url=f"sqlite:///{tmp_path / 'perfwatch.db'}",
        redis_url="redis://localhost:6379/15",
        worker_count=0,
        worker_poll_interval_seconds=0.01,
        enable_cadence=False,
        retry=RetrySettings(max_attempts=3, base_delay_seconds=5.0, multiplier=2.0, timeout_seconds=600),
        collection=CollectionSettings(
            runs_per_measurement=3,
            inter_run_delay_seconds=0.0,
            poll_interval_seconds=0.0,
            max_polls=3,
            max_attempts=3,
            bypass_budget=2,
            rate_limit_base_delay_seconds=0.0,
        ),
    )


@pytest_asyncio.fixture
async def db(settings):
    database = Database(settings)
    await database.init_models()
    yield database
    await database.dispose()


@pytest_asyncio.fixture
async def redis_client():
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


async def add_site(
    db, site_id: str = "site-1", url: str = "https://example.com", enabled: bool = True, **pages: str
) -> Site:
    site = Site(id=site_id, name=site_id, url=url, monitoring_enabled=enabled, **pages)
    async with db.session() as session:
        session.add(site)
        await session.commit()
    return site


async def add_history(
    db,
    site_id: str,
    device: str,
    metric: str,
    values: List[float],
    end: Optional[datetime] = None,
    spacing: timedelta = timedelta(days=1),
    page_type: str = "homepage",
) -> List[MetricSample]:
    """Write one sample per value, oldest first, the newest at ``end``."""
    end = end or utcnow() - timedelta(hours=1)
    samples = []
    for i, value in enumerate(values):
        timestamp = end - spacing * (len(values) - 1 - i)
        samples.append(
            MetricSample(
                id=str(uuid.uuid4()),
                job_id=f"history-{uuid.uuid4()}",
                site_id=site_id,
                device=device,
                page_type=page_type,
                batch_id=str(uuid.uuid4()),
                run_count=3,
                timestamp=timestamp,
                **{metric: value},
            )
        )
    async with db.session() as session:
        session.add_all(samples)
        await session.commit()
    return samples
