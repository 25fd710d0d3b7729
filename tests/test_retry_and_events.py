import pytest

from perfwatch.config import RetrySettings
from perfwatch.control_plane.events import JobEvent, JobEventBus, JobEventType
from perfwatch.control_plane.retry import RetryPolicy
from perfwatch.errors import JobTimedOut, ProviderBlocked, SiteNotFound, error_category


def test_backoff_is_exponential():
    policy = RetryPolicy.from_settings(RetrySettings(base_delay_seconds=5.0, multiplier=2.0))

    assert [policy.backoff(attempt) for attempt in (1, 2, 3)] == [5.0, 10.0, 20.0]


def test_should_retry_respects_budget_and_non_retryable_errors():
    policy = RetryPolicy(max_attempts=3)

    assert policy.should_retry(1, ProviderBlocked())
    assert policy.should_retry(2, JobTimedOut())
    assert not policy.should_retry(3, ProviderBlocked())
    assert not policy.should_retry(1, SiteNotFound())


def test_error_category():
    assert error_category(ProviderBlocked("x")) == "ProviderBlocked"
    assert error_category(ValueError("x")) == "ValueError"


@pytest.mark.asyncio
async def test_event_bus_delivers_to_sync_and_async_listeners():
    bus = JobEventBus()
    seen = []

    async def async_listener(event):
        seen.append(("async", event.type))

    bus.subscribe(lambda event: seen.append(("sync", event.type)))
    unsubscribe = bus.subscribe(async_listener)

    await bus.publish(JobEvent(JobEventType.STARTED, "job-1", "site-1", "mobile", 1))
    unsubscribe()
    await bus.publish(JobEvent(JobEventType.COMPLETED, "job-1", "site-1", "mobile", 1))

    assert seen == [
        ("sync", JobEventType.STARTED),
        ("async", JobEventType.STARTED),
        ("sync", JobEventType.COMPLETED),
    ]


@pytest.mark.asyncio
async def test_failing_listener_does_not_stop_others():
    bus = JobEventBus()
    seen = []

    def broken(event):
        raise RuntimeError("listener bug")

    bus.subscribe(broken)
    bus.subscribe(lambda event: seen.append(event.job_id))

    await bus.publish(JobEvent(JobEventType.FAILED, "job-9", "site-1", "desktop"))

    assert seen == ["job-9"]
