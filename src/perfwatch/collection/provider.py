"""
Measurement Provider

The external service that loads a page under a device profile and reports
metric fields. Providers are pluggable; the orchestrator only relies on the
normalized ProviderResponse returned by ``submit`` and ``poll``.
"""
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

import httpx
import structlog

from ..config import CollectionSettings
from ..metrics.fields import METRIC_FIELDS

logger = structlog.get_logger(__name__)


class ResponseStatus(str, Enum):
    COMPLETE = "complete"
    PENDING = "pending"
    BLOCKED = "blocked"
    RATE_LIMITED = "rate_limited"
    INVALID = "invalid"


@dataclass(frozen=True)
class ProviderResponse:
    """Normalized outcome of a single provider request."""

    status: ResponseStatus
    fields: Dict[str, Optional[float]] = field(default_factory=dict)
    poll_token: Optional[str] = None
    retry_after: Optional[float] = None
    detail: str = ""

    @classmethod
    def complete(cls, fields: Dict[str, Optional[float]]) -> "ProviderResponse":
        return cls(ResponseStatus.COMPLETE, fields=dict(fields))

    @classmethod
    def pending(cls, poll_token: str, detail: str = "") -> "ProviderResponse":
        return cls(ResponseStatus.PENDING, poll_token=poll_token, detail=detail)

    @classmethod
    def blocked(cls, detail: str = "") -> "ProviderResponse":
        return cls(ResponseStatus.BLOCKED, detail=detail)

    @classmethod
    def rate_limited(cls, retry_after: Optional[float] = None, detail: str = "") -> "ProviderResponse":
        return cls(ResponseStatus.RATE_LIMITED, retry_after=retry_after, detail=detail)

    @classmethod
    def invalid(cls, detail: str = "") -> "ProviderResponse":
        return cls(ResponseStatus.INVALID, detail=detail)


class MeasurementProvider(ABC):
    """Interface every measurement backend implements."""

    name = "provider"

    @abstractmethod
    async def submit(self, url: str, device: str, bypass: bool = False) -> ProviderResponse:
        """Start (or synchronously perform) a measurement of ``url``."""

    async def poll(self, poll_token: str, bypass: bool = False) -> ProviderResponse:
        """Check on a measurement previously answered with PENDING."""
        return ProviderResponse.invalid(f"{self.name} does not support polling")

    async def aclose(self) -> None:
        return None


_BLOCK_MARKERS = ("cloudflare", "cf-ray", "cf-chl", "attention required", "captcha")


def looks_blocked(status_code: int, body: str) -> bool:
    """
    Heuristic for anti-automation interstitials.

    A challenge page can arrive with 200 or 503, so content is checked
    regardless of status; a bare 403 with a known marker also counts.
    """
    text = (body or "").lower()
    if "challenge" in text and "cloudflare" in text:
        return True
    if status_code in (403, 503):
        return any(marker in text for marker in _BLOCK_MARKERS)
    return False


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Seconds from a Retry-After header; HTTP-date values are ignored."""
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    if math.isnan(seconds) or seconds < 0:
        return None
    return seconds


def extract_metric_fields(metrics: Dict[str, Any]) -> Dict[str, Optional[float]]:
    """Keep known metric names; non-numeric values become missing."""
    fields: Dict[str, Optional[float]] = {}
    for name in METRIC_FIELDS:
        value = metrics.get(name)
        if isinstance(value, bool) or value is None:
            fields[name] = None
        elif isinstance(value, (int, float)):
            fields[name] = float(value)
        else:
            try:
                fields[name] = float(value)
            except (TypeError, ValueError):
                fields[name] = None
    return fields


# Sent on the bypass path so the request resembles a regular browser.
BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "application/json, text/html;q=0.9, */*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
}


class HttpMeasurementProvider(MeasurementProvider):
    """
    Measurement gateway reached over HTTP.

    ``POST {provider_url}`` with ``{"url", "device"}`` answers either
    ``{"status": "complete", "metrics": {...}}`` or
    ``{"status": "pending", "id": ...}``; pending measurements are polled at
    ``GET {provider_url}/{id}``. The bypass path sends the same request through
    ``bypass_url`` (a challenge-solving proxy) with browser headers.
    """

    name = "http"

    def __init__(
        self,
        settings: CollectionSettings,
        client: Optional[httpx.AsyncClient] = None,
        bypass_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings
        headers = {}
        if settings.provider_api_key:
            headers["X-API-Key"] = settings.provider_api_key
        timeout = httpx.Timeout(settings.request_timeout_seconds)
        self._client = client or httpx.AsyncClient(headers=headers, timeout=timeout)
        if bypass_client is None and settings.bypass_url:
            bypass_client = httpx.AsyncClient(
                headers={**BROWSER_HEADERS, **headers},
                timeout=timeout,
                proxy=settings.bypass_url,
            )
        self._bypass_client = bypass_client

    def _client_for(self, bypass: bool) -> httpx.AsyncClient:
        if bypass and self._bypass_client is not None:
            return self._bypass_client
        return self._client

    async def submit(self, url: str, device: str, bypass: bool = False) -> ProviderResponse:
        client = self._client_for(bypass)
        try:
            response = await client.post(self.settings.provider_url, json={"url": url, "device": device})
        except httpx.HTTPError as e:
            logger.warning("provider_transport_error", url=url, device=device, error=str(e))
            return ProviderResponse.invalid(f"transport error: {e}")
        return self._classify(response)

    async def poll(self, poll_token: str, bypass: bool = False) -> ProviderResponse:
        client = self._client_for(bypass)
        poll_url = f"{self.settings.provider_url.rstrip('/')}/{poll_token}"
        try:
            response = await client.get(poll_url)
        except httpx.HTTPError as e:
            logger.warning("provider_transport_error", poll_token=poll_token, error=str(e))
            return ProviderResponse.invalid(f"transport error: {e}")
        return self._classify(response)

    def _classify(self, response: httpx.Response) -> ProviderResponse:
        if response.status_code == 429:
            return ProviderResponse.rate_limited(
                retry_after=parse_retry_after(response.headers.get("retry-after")),
                detail="HTTP 429",
            )

        body = response.text
        if looks_blocked(response.status_code, body):
            return ProviderResponse.blocked(f"HTTP {response.status_code}: {body[:200]}")

        if response.status_code >= 400:
            return ProviderResponse.invalid(f"HTTP {response.status_code}: {body[:200]}")

        try:
            payload = response.json()
        except ValueError:
            return ProviderResponse.invalid(f"non-JSON response: {body[:200]}")
        if not isinstance(payload, dict):
            return ProviderResponse.invalid("response is not a JSON object")

        status = payload.get("status")
        if status in ("pending", "running", "queued"):
            token = payload.get("id")
            if not token:
                return ProviderResponse.invalid("pending response without id")
            return ProviderResponse.pending(str(token), detail=str(status))
        if status == "complete" and isinstance(payload.get("metrics"), dict):
            return ProviderResponse.complete(extract_metric_fields(payload["metrics"]))
        return ProviderResponse.invalid(f"unexpected status: {status!r}")

    async def aclose(self) -> None:
        await self._client.aclose()
        if self._bypass_client is not None:
            await self._bypass_client.aclose()
