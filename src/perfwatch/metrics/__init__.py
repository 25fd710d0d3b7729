"""
Metrics

Metric field definitions, sample models and the time-series store.
"""

from .fields import METRIC_FIELDS, METRIC_POLARITY, Polarity, is_regression
from .models import MetricSample, RawRun
from .store import MetricsStore

__all__ = [
    "METRIC_FIELDS",
    "METRIC_POLARITY",
    "Polarity",
    "is_regression",
    "MetricSample",
    "RawRun",
    "MetricsStore",
]
