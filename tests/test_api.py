import asyncio

import fakeredis
import pytest
from fastapi.testclient import TestClient

from perfwatch.database import Database
from perfwatch.main import create_app

from conftest import ScriptedProvider, add_site


@pytest.fixture
def client(settings):
    async def seed():
        database = Database(settings)
        await database.init_models()
        await add_site(database, "site-1")
        await database.dispose()

    asyncio.run(seed())
    provider = ScriptedProvider()
    app = create_app(
        settings,
        redis_client=fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True),
        provider=provider,
    )
    with TestClient(app) as test_client:
        yield test_client
    assert provider.closed


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_trigger_site_schedules_each_device(client):
    response = client.post("/api/v1/sites/site-1/collections")

    assert response.status_code == 202
    job_ids = response.json()["job_ids"]
    assert len(job_ids) == 2

    job = client.get(f"/api/v1/jobs/{job_ids[0]}").json()
    assert job["status"] == "queued"
    assert job["priority"] == 1


def test_trigger_with_idempotency_key_returns_original_jobs(client):
    headers = {"Idempotency-Key": "nightly-rerun-1"}

    first = client.post("/api/v1/collections", headers=headers).json()
    second = client.post("/api/v1/collections", headers=headers).json()

    assert first["scheduled"] == 2
    assert second["job_ids"] == first["job_ids"]


def test_trigger_unknown_site_is_404(client):
    assert client.post("/api/v1/sites/nope/collections").status_code == 404


def test_unknown_job_is_404(client):
    assert client.get("/api/v1/jobs/missing").status_code == 404


def test_pause_and_resume_show_in_queue_stats(client):
    assert client.post("/api/v1/workers/pause").json() == {"paused": True}
    assert client.get("/api/v1/queue/stats").json()["queue"]["paused"] is True

    assert client.post("/api/v1/workers/resume").json() == {"paused": False}
    assert client.get("/api/v1/queue/stats").json()["queue"]["paused"] is False


def test_job_listing_and_reap(client):
    client.post("/api/v1/collections")

    listing = client.get("/api/v1/jobs", params={"site_id": "site-1"}).json()
    queued = client.get("/api/v1/jobs", params={"job_status": "queued"}).json()

    assert listing["count"] == 2
    assert queued["count"] == 2
    assert client.post("/api/v1/jobs/reap").json() == {"reaped": 0}


def test_anomaly_endpoints(client):
    anomalies = client.get("/api/v1/sites/site-1/anomalies").json()

    assert anomalies["anomalies"] == []
    assert anomalies["trend"]["trend"] == "stable"
    assert client.post("/api/v1/anomalies/missing/false-positive").status_code == 404
    assert client.post("/api/v1/anomalies/missing/resolve").status_code == 404
    assert client.post("/api/v1/anomalies/resolve").json() == {"resolved": 0}
