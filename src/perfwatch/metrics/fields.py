"""
Metric fields measured for every page and their regression direction.
"""
from enum import Enum
from typing import Dict, Tuple


class Polarity(str, Enum):
    HIGHER_IS_WORSE = "higher_is_worse"
    HIGHER_IS_BETTER = "higher_is_better"


METRIC_POLARITY: Dict[str, Polarity] = {
    "load_delay": Polarity.HIGHER_IS_WORSE,
    "visual_stability": Polarity.HIGHER_IS_WORSE,
    "paint_time": Polarity.HIGHER_IS_WORSE,
    "speed_index": Polarity.HIGHER_IS_WORSE,
    "blocking_time": Polarity.HIGHER_IS_WORSE,
    "interactive_time": Polarity.HIGHER_IS_WORSE,
    "server_response_time": Polarity.HIGHER_IS_WORSE,
    "byte_weight": Polarity.HIGHER_IS_WORSE,
    "request_count": Polarity.HIGHER_IS_WORSE,
    "overall_score": Polarity.HIGHER_IS_BETTER,
}

METRIC_FIELDS: Tuple[str, ...] = tuple(METRIC_POLARITY)


def is_regression(metric: str, current: float, baseline_mean: float) -> bool:
    """True when ``current`` sits on the worse side of ``baseline_mean``."""
    polarity = METRIC_POLARITY.get(metric)
    if polarity is Polarity.HIGHER_IS_WORSE:
        return current > baseline_mean
    if polarity is Polarity.HIGHER_IS_BETTER:
        return current < baseline_mean
    return False
