"""
Window statistics and classification for a single metric.

Pure functions, no I/O: the detector feeds them history loaded from the
metrics store.
"""
import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

from ..metrics.fields import is_regression

# (|z| lower bound, confidence), checked in order.
CONFIDENCE_TIERS = (
    (3.0, 0.997),
    (2.5, 0.987),
    (2.0, 0.954),
    (1.5, 0.866),
)
BASE_CONFIDENCE = 0.68

EXPECTED_RANGE_SIGMAS = 2.0

# Relative stddev at or below which a window counts as constant.
ZERO_VARIANCE_TOLERANCE = 1e-9


class Verdict(str, Enum):
    NORMAL = "normal"
    ANOMALOUS_IMPROVEMENT = "anomalous_improvement"
    ANOMALOUS_REGRESSION = "anomalous_regression"
    SKIPPED = "skipped"


class SkipReason(str, Enum):
    INSUFFICIENT_HISTORY = "insufficient_history"
    ZERO_VARIANCE = "zero_variance"


@dataclass(frozen=True)
class WindowStats:
    mean: float
    median: float
    stddev: float
    min: float
    max: float
    count: int

    @property
    def is_constant(self) -> bool:
        if self.min == self.max:
            return True
        return self.stddev <= ZERO_VARIANCE_TOLERANCE * max(1.0, abs(self.mean))

    @property
    def expected_min(self) -> float:
        return max(0.0, self.mean - EXPECTED_RANGE_SIGMAS * self.stddev)

    @property
    def expected_max(self) -> float:
        return self.mean + EXPECTED_RANGE_SIGMAS * self.stddev


@dataclass(frozen=True)
class Classification:
    metric: str
    current: float
    verdict: Verdict
    stats: Optional[WindowStats] = None
    z_score: Optional[float] = None
    confidence: Optional[float] = None
    skip_reason: Optional[SkipReason] = None

    @property
    def is_regression(self) -> bool:
        return self.verdict is Verdict.ANOMALOUS_REGRESSION


def compute_statistics(values: Sequence[float]) -> WindowStats:
    """Mean, median, population standard deviation, min and max."""
    if not values:
        raise ValueError("Cannot compute statistics of an empty window")
    ordered = sorted(values)
    count = len(ordered)
    mean = math.fsum(ordered) / count
    mid = count // 2
    med = (ordered[mid - 1] + ordered[mid]) / 2 if count % 2 == 0 else ordered[mid]
    variance = math.fsum((v - mean) ** 2 for v in ordered) / count
    return WindowStats(
        mean=mean,
        median=med,
        stddev=math.sqrt(variance),
        min=ordered[0],
        max=ordered[-1],
        count=count,
    )


def confidence_for(abs_z: float) -> float:
    for bound, confidence in CONFIDENCE_TIERS:
        if abs_z >= bound:
            return confidence
    return BASE_CONFIDENCE


def classify(
    metric: str,
    current: float,
    history: Sequence[float],
    min_samples: int,
    z_threshold: float,
) -> Classification:
    """Decide whether ``current`` is a regression against ``history``."""
    if len(history) < min_samples:
        return Classification(metric, current, Verdict.SKIPPED, skip_reason=SkipReason.INSUFFICIENT_HISTORY)

    stats = compute_statistics(history)
    if stats.is_constant:
        return Classification(metric, current, Verdict.SKIPPED, stats=stats, skip_reason=SkipReason.ZERO_VARIANCE)

    z = (current - stats.mean) / stats.stddev
    abs_z = abs(z)
    confidence = confidence_for(abs_z)

    if abs_z < z_threshold:
        verdict = Verdict.NORMAL
    elif is_regression(metric, current, stats.mean):
        verdict = Verdict.ANOMALOUS_REGRESSION
    else:
        verdict = Verdict.ANOMALOUS_IMPROVEMENT

    return Classification(metric, current, verdict, stats=stats, z_score=z, confidence=confidence)
