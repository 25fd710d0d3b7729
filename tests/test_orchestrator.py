import pytest

from perfwatch.collection.orchestrator import CollectionOrchestrator
from perfwatch.collection.provider import ProviderResponse
from perfwatch.errors import ProviderBlocked, ProviderInvalidResponse, ProviderRateLimited, ProviderTimeout

from conftest import ScriptedProvider

URL = "https://example.com"


def _orchestrator(provider, settings, sleep):
    return CollectionOrchestrator(provider, settings.collection, sleep=sleep)


@pytest.mark.asyncio
async def test_complete_on_first_submit(settings, sleep):
    provider = ScriptedProvider(submits=[ProviderResponse.complete({"load_delay": 2.0, "overall_score": 91.0})])

    measurement = await _orchestrator(provider, settings, sleep).collect(URL, "mobile")

    assert measurement.fields["load_delay"] == 2.0
    assert measurement.provider_calls == 1
    assert measurement.used_bypass is False
    assert provider.submit_calls == [{"url": URL, "device": "mobile", "bypass": False}]


@pytest.mark.asyncio
async def test_pending_measurement_is_polled_until_complete(settings, sleep):
    settings.collection.poll_interval_seconds = 10.0
    provider = ScriptedProvider(
        submits=[ProviderResponse.pending("m-1")],
        polls=[
            ProviderResponse.pending("m-1"),
            ProviderResponse.invalid("not ready"),
            ProviderResponse.complete({"load_delay": 1.5}),
        ],
    )

    measurement = await _orchestrator(provider, settings, sleep).collect(URL, "desktop")

    assert measurement.fields["load_delay"] == 1.5
    assert [call["token"] for call in provider.poll_calls] == ["m-1", "m-1", "m-1"]
    assert sleep.delays == [10.0, 10.0, 10.0]


@pytest.mark.asyncio
async def test_poll_budget_exhaustion_is_a_timeout(settings, sleep):
    settings.collection.max_polls = 2
    provider = ScriptedProvider(
        submits=[ProviderResponse.pending("m-1")],
        polls=[ProviderResponse.pending("m-1"), ProviderResponse.pending("m-1")],
    )

    with pytest.raises(ProviderTimeout):
        await _orchestrator(provider, settings, sleep).collect(URL, "mobile")
    assert len(provider.submit_calls) == 1


@pytest.mark.asyncio
async def test_block_switches_to_bypass_path(settings, sleep):
    provider = ScriptedProvider(
        submits=[
            ProviderResponse.blocked("cloudflare challenge"),
            ProviderResponse.complete({"load_delay": 3.0}),
        ]
    )

    measurement = await _orchestrator(provider, settings, sleep).collect(URL, "mobile")

    assert measurement.used_bypass is True
    assert [call["bypass"] for call in provider.submit_calls] == [False, True]


@pytest.mark.asyncio
async def test_block_after_bypass_budget_raises_blocked(settings, sleep):
    settings.collection.bypass_budget = 2
    provider = ScriptedProvider(default=ProviderResponse.blocked("captcha"))

    with pytest.raises(ProviderBlocked):
        await _orchestrator(provider, settings, sleep).collect(URL, "mobile")
    assert [call["bypass"] for call in provider.submit_calls] == [False, True, True]


@pytest.mark.asyncio
async def test_rate_limit_honours_retry_after(settings, sleep):
    provider = ScriptedProvider(
        submits=[
            ProviderResponse.rate_limited(retry_after=7.0),
            ProviderResponse.complete({"load_delay": 2.0}),
        ]
    )

    measurement = await _orchestrator(provider, settings, sleep).collect(URL, "mobile")

    assert measurement.provider_calls == 2
    assert sleep.delays == [7.0]


@pytest.mark.asyncio
async def test_rate_limit_backs_off_exponentially_then_gives_up(settings, sleep):
    settings.collection.rate_limit_base_delay_seconds = 3.0
    provider = ScriptedProvider(default=ProviderResponse.rate_limited())

    with pytest.raises(ProviderRateLimited):
        await _orchestrator(provider, settings, sleep).collect(URL, "mobile")
    assert len(provider.submit_calls) == 3
    assert sleep.delays == [3.0, 6.0]


@pytest.mark.asyncio
async def test_invalid_fields_are_never_returned(settings, sleep):
    provider = ScriptedProvider(
        submits=[
            ProviderResponse.complete({}),
            ProviderResponse.complete({"load_delay": -1.0}),
            ProviderResponse.complete({"load_delay": float("inf")}),
        ]
    )

    with pytest.raises(ProviderInvalidResponse):
        await _orchestrator(provider, settings, sleep).collect(URL, "mobile")
    assert len(provider.submit_calls) == 3


@pytest.mark.asyncio
async def test_invalid_then_valid_recovers(settings, sleep):
    provider = ScriptedProvider(
        submits=[
            ProviderResponse.invalid("transport error"),
            ProviderResponse.complete({"load_delay": 2.2}),
        ]
    )

    measurement = await _orchestrator(provider, settings, sleep).collect(URL, "mobile")

    assert measurement.fields["load_delay"] == 2.2
