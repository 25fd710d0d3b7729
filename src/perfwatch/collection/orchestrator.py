"""
Collection Orchestrator

Wraps one logical "measure this page on this device" request with the
recovery a noisy, rate-limited and sometimes blocking provider needs:
submit/poll cycles, a bypass path on detected blocking, and backoff on rate
limiting. The outcome is either a validated Measurement or a typed
ProviderError; partial or guessed values are never returned.
"""
import asyncio
import math
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

import structlog

from ..config import CollectionSettings
from ..errors import (
    ProviderBlocked,
    ProviderError,
    ProviderInvalidResponse,
    ProviderRateLimited,
    ProviderTimeout,
)
from .provider import MeasurementProvider, ProviderResponse, ResponseStatus

logger = structlog.get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class Measurement:
    url: str
    device: str
    fields: Dict[str, Optional[float]]
    provider_calls: int
    used_bypass: bool


class CollectionOrchestrator:
    """Drives a MeasurementProvider until it yields a usable measurement."""

    def __init__(
        self,
        provider: MeasurementProvider,
        settings: CollectionSettings,
        sleep: Sleep = asyncio.sleep,
    ):
        self.provider = provider
        self.settings = settings
        self._sleep = sleep

    async def collect(self, url: str, device: str) -> Measurement:
        """
        Measure ``url`` on ``device``.

        Raises:
            ProviderBlocked: still blocked after the bypass budget is spent
            ProviderRateLimited: rate limited on every allowed attempt
            ProviderTimeout: an asynchronous measurement never completed
            ProviderInvalidResponse: unusable responses on every allowed attempt
        """
        bypass = False
        bypasses = 0
        failures = 0
        calls = 0

        while True:
            calls += 1
            response = await self.provider.submit(url, device, bypass=bypass)
            if response.status is ResponseStatus.PENDING:
                response = await self._await_result(response, bypass, url, device)

            error: ProviderError
            if response.status is ResponseStatus.COMPLETE:
                try:
                    fields = self._validated_fields(response)
                except ProviderInvalidResponse as e:
                    error = e
                else:
                    logger.info(
                        "measurement_collected",
                        url=url,
                        device=device,
                        provider=self.provider.name,
                        provider_calls=calls,
                        used_bypass=bypass,
                    )
                    return Measurement(url, device, fields, calls, bypass)

            elif response.status is ResponseStatus.BLOCKED:
                if bypasses >= self.settings.bypass_budget:
                    raise ProviderBlocked(
                        f"{url} ({device}) still blocked after {bypasses} bypass attempts: {response.detail}"
                    )
                bypasses += 1
                bypass = True
                logger.warning(
                    "provider_blocked_switching_to_bypass",
                    url=url,
                    device=device,
                    bypass_attempt=bypasses,
                    detail=response.detail,
                )
                continue

            elif response.status is ResponseStatus.RATE_LIMITED:
                error = ProviderRateLimited(
                    f"{url} ({device}) rate limited: {response.detail}",
                    retry_after=response.retry_after,
                )

            else:
                error = ProviderInvalidResponse(f"{url} ({device}): {response.detail}")

            failures += 1
            if failures >= self.settings.max_attempts:
                logger.error(
                    "measurement_failed",
                    url=url,
                    device=device,
                    category=error.category,
                    failures=failures,
                )
                raise error

            delay = self._retry_delay(failures, response)
            logger.warning(
                "measurement_retry",
                url=url,
                device=device,
                category=error.category,
                attempt=failures,
                delay_seconds=delay,
            )
            await self._sleep(delay)

    async def _await_result(
        self,
        pending: ProviderResponse,
        bypass: bool,
        url: str,
        device: str,
    ) -> ProviderResponse:
        """Poll a submitted measurement on a fixed interval until it settles."""
        token = pending.poll_token
        for poll in range(1, self.settings.max_polls + 1):
            await self._sleep(self.settings.poll_interval_seconds)
            response = await self.provider.poll(token, bypass=bypass)

            if response.status in (ResponseStatus.COMPLETE, ResponseStatus.BLOCKED):
                return response
            if response.status is not ResponseStatus.PENDING:
                # Transient fetch failures while the measurement runs remotely.
                logger.debug("poll_not_ready", poll_token=token, poll=poll, status=response.status.value)

        waited = self.settings.max_polls * self.settings.poll_interval_seconds
        raise ProviderTimeout(f"{url} ({device}) measurement {token} did not complete within {waited:.0f}s")

    def _retry_delay(self, failures: int, response: ProviderResponse) -> float:
        if response.status is ResponseStatus.RATE_LIMITED and response.retry_after is not None:
            return response.retry_after
        return self.settings.rate_limit_base_delay_seconds * (2 ** (failures - 1))

    @staticmethod
    def _validated_fields(response: ProviderResponse) -> Dict[str, Optional[float]]:
        fields = dict(response.fields)
        present = {name: value for name, value in fields.items() if value is not None}
        if not present:
            raise ProviderInvalidResponse("measurement reported no metric fields")
        for name, value in present.items():
            if not math.isfinite(value) or value < 0:
                raise ProviderInvalidResponse(f"metric {name} has invalid value {value!r}")
        return fields
