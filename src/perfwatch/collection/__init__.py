"""
Collection

Measurement providers, the retrying collection orchestrator and the
median run aggregator.
"""

from .provider import (
    HttpMeasurementProvider,
    MeasurementProvider,
    ProviderResponse,
    ResponseStatus,
    looks_blocked,
)
from .orchestrator import CollectionOrchestrator, Measurement
from .aggregator import RawRunResult, RunAggregator, median

__all__ = [
    "HttpMeasurementProvider",
    "MeasurementProvider",
    "ProviderResponse",
    "ResponseStatus",
    "looks_blocked",
    "CollectionOrchestrator",
    "Measurement",
    "RawRunResult",
    "RunAggregator",
    "median",
]
