import pytest
from sqlmodel import select

from perfwatch.anomaly.detector import AnomalyDetector
from perfwatch.anomaly.models import AnomalyRecord
from perfwatch.anomaly.sinks import RedisAnomalyPublisher
from perfwatch.collection.aggregator import RunAggregator
from perfwatch.collection.orchestrator import CollectionOrchestrator
from perfwatch.collection.provider import ProviderResponse
from perfwatch.control_plane.job_scheduler import JobScheduler
from perfwatch.control_plane.models import JobStatus
from perfwatch.control_plane.queue_manager import QueueManager
from perfwatch.control_plane.state_manager import StateManager
from perfwatch.errors import ProviderBlocked, SiteNotFound
from perfwatch.metrics.models import MetricSample, RawRun
from perfwatch.metrics.store import MetricsStore
from perfwatch.pipeline import MeasurementPipeline

from conftest import ScriptedProvider, add_history, add_site


def _complete(load_delay):
    return ProviderResponse.complete({"load_delay": load_delay, "overall_score": 90.0})


@pytest.fixture
def components(db, redis_client, settings, sleep):
    def build(provider):
        state = StateManager(redis_client, db)
        store = MetricsStore(db)
        detector = AnomalyDetector(db, store, settings.detector, sink=RedisAnomalyPublisher(redis_client))
        orchestrator = CollectionOrchestrator(provider, settings.collection, sleep=sleep)
        pipeline = MeasurementPipeline(
            state,
            RunAggregator(orchestrator, settings.collection, sleep=sleep),
            store,
            detector,
            settings,
        )
        scheduler = JobScheduler(state, QueueManager(redis_client), pipeline.run, settings)
        return scheduler, pipeline, store

    return build


async def _rows(db, model):
    async with db.session() as session:
        result = await session.execute(select(model))
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_nightly_run_stores_median_without_anomaly(db, settings, components):
    settings.device_profiles = ["mobile"]
    await add_site(db)
    await add_history(db, "site-1", "mobile", "load_delay", [1.8, 2.2] * 5)
    provider = ScriptedProvider(submits=[_complete(2.1), _complete(2.5), _complete(2.3)])
    scheduler, _, store = components(provider)
    await scheduler.queue_manager.ensure_consumer_groups()

    job_id = (await scheduler.schedule_all())[0]
    outcome = await scheduler.process_job(job_id)

    assert outcome.status == JobStatus.COMPLETED.value
    sample = await store.sample_for_job(job_id)
    assert sample.load_delay == pytest.approx(2.3)
    assert sample.run_count == 3
    assert sample.page_type == "homepage"
    raw_runs = await _rows(db, RawRun)
    assert sorted(r.load_delay for r in raw_runs) == pytest.approx([2.1, 2.3, 2.5])
    assert {r.batch_id for r in raw_runs} == {sample.batch_id}
    assert await _rows(db, AnomalyRecord) == []


@pytest.mark.asyncio
async def test_regression_is_detected_after_write(db, settings, components):
    settings.device_profiles = ["mobile"]
    await add_site(db)
    await add_history(db, "site-1", "mobile", "load_delay", [1.8, 2.2] * 5)
    provider = ScriptedProvider(default=_complete(3.0))
    scheduler, _, _ = components(provider)
    await scheduler.queue_manager.ensure_consumer_groups()

    job_id = (await scheduler.schedule_all())[0]
    await scheduler.process_job(job_id)

    anomalies = await _rows(db, AnomalyRecord)
    assert [(a.metric, a.current_value) for a in anomalies] == [("load_delay", 3.0)]
    assert anomalies[0].confidence == 0.997


@pytest.mark.asyncio
async def test_retried_job_reuses_its_stored_sample(db, settings, components):
    await add_site(db)
    provider = ScriptedProvider(default=_complete(2.0))
    scheduler, pipeline, _ = components(provider)
    job = await scheduler.state_manager.create_job("site-1", "mobile", 2, 3, 600)

    first = await pipeline.run(job)
    calls = len(provider.submit_calls)
    second = await pipeline.run(job)

    assert [s.id for s in second] == [s.id for s in first]
    assert len(provider.submit_calls) == calls == 3
    assert len(await _rows(db, MetricSample)) == 1


@pytest.mark.asyncio
async def test_all_runs_failing_fails_the_attempt(db, settings, components):
    settings.device_profiles = ["mobile"]
    settings.collection.bypass_budget = 0
    await add_site(db)
    provider = ScriptedProvider(default=ProviderResponse.blocked("captcha"))
    scheduler, _, _ = components(provider)
    await scheduler.queue_manager.ensure_consumer_groups()

    job_id = (await scheduler.schedule_all())[0]
    outcome = await scheduler.process_job(job_id)

    assert outcome.status == JobStatus.QUEUED.value
    assert outcome.error_category == "ProviderBlocked"
    assert await _rows(db, MetricSample) == []


@pytest.mark.asyncio
async def test_deleted_site_fails_without_retry(db, settings, components):
    provider = ScriptedProvider()
    scheduler, pipeline, _ = components(provider)
    job = await scheduler.state_manager.create_job("gone", "mobile", 2, 3, 600)

    with pytest.raises(SiteNotFound):
        await pipeline.run(job)

    assert provider.submit_calls == []


@pytest.mark.asyncio
async def test_each_configured_page_gets_its_own_sample(db, settings, components):
    settings.device_profiles = ["desktop"]
    await add_site(db, category_url="https://example.com/collections/all", product_url="https://example.com/p/1")
    provider = ScriptedProvider(default=_complete(2.0))
    scheduler, _, store = components(provider)
    await scheduler.queue_manager.ensure_consumer_groups()

    job_id = (await scheduler.schedule_all())[0]
    outcome = await scheduler.process_job(job_id)

    assert outcome.status == JobStatus.COMPLETED.value
    samples = await store.samples_for_job(job_id)
    assert sorted(s.page_type for s in samples) == ["category", "homepage", "product"]
    measured = [call["url"] for call in provider.submit_calls]
    assert measured == ["https://example.com"] * 3 + ["https://example.com/collections/all"] * 3 + [
        "https://example.com/p/1"
    ] * 3
    raw_runs = await _rows(db, RawRun)
    assert {(r.page_type, r.page_url) for r in raw_runs} == {
        ("homepage", "https://example.com"),
        ("category", "https://example.com/collections/all"),
        ("product", "https://example.com/p/1"),
    }


@pytest.mark.asyncio
async def test_retry_measures_only_missing_pages(db, settings, components):
    await add_site(db, product_url="https://example.com/p/1")
    provider = ScriptedProvider(
        submits=[_complete(2.0)] * 3 + [ProviderResponse.blocked("captcha")] * 3,
        default=_complete(2.2),
    )
    settings.collection.bypass_budget = 0
    scheduler, pipeline, store = components(provider)
    job = await scheduler.state_manager.create_job("site-1", "mobile", 2, 3, 600)

    with pytest.raises(ProviderBlocked):
        await pipeline.run(job)
    homepage = await store.sample_for_job(job.id, "homepage")
    submits_before_retry = len(provider.submit_calls)

    samples = await pipeline.run(job)

    assert [s.page_type for s in samples] == ["homepage", "product"]
    assert samples[0].id == homepage.id
    assert samples[1].load_delay == pytest.approx(2.2)
    retried = [call["url"] for call in provider.submit_calls[submits_before_retry:]]
    assert retried == ["https://example.com/p/1"] * 3


@pytest.mark.asyncio
async def test_detection_sweep_covers_monitored_sites(db, settings, components):
    settings.detect_after_write = False
    settings.device_profiles = ["mobile"]
    await add_site(db)
    await add_history(db, "site-1", "mobile", "load_delay", [1.8, 2.2] * 5)
    provider = ScriptedProvider(default=_complete(3.0))
    scheduler, pipeline, _ = components(provider)
    await scheduler.queue_manager.ensure_consumer_groups()

    job_id = (await scheduler.schedule_all())[0]
    await scheduler.process_job(job_id)
    assert await _rows(db, AnomalyRecord) == []

    assert await pipeline.detect_all() == 1
    anomalies = await _rows(db, AnomalyRecord)
    assert [(a.site_id, a.page_type, a.metric) for a in anomalies] == [("site-1", "homepage", "load_delay")]
