"""
Anomaly Detection

Rolling-window statistics, the detector and anomaly sinks.
"""

from .models import AnomalyRecord, AnomalyStatus
from .statistics import Classification, SkipReason, Verdict, WindowStats, classify, compute_statistics, confidence_for
from .sinks import AnomalySink, CompositeAnomalySink, LoggingAnomalySink, RedisAnomalyPublisher
from .detector import AnomalyDetector

__all__ = [
    "AnomalyRecord",
    "AnomalyStatus",
    "Classification",
    "SkipReason",
    "Verdict",
    "WindowStats",
    "classify",
    "compute_statistics",
    "confidence_for",
    "AnomalySink",
    "CompositeAnomalySink",
    "LoggingAnomalySink",
    "RedisAnomalyPublisher",
    "AnomalyDetector",
]
