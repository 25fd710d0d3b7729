import pytest

from perfwatch.anomaly.statistics import (
    SkipReason,
    Verdict,
    classify,
    compute_statistics,
    confidence_for,
)

HISTORY = [90.0, 110.0] * 5  # mean 100, population stddev 10


def test_compute_statistics_uses_population_stddev():
    stats = compute_statistics(HISTORY)

    assert stats.mean == 100.0
    assert stats.stddev == 10.0
    assert stats.median == 100.0
    assert (stats.min, stats.max, stats.count) == (90.0, 110.0, 10)
    assert (stats.expected_min, stats.expected_max) == (80.0, 120.0)


def test_expected_min_is_clamped_at_zero():
    stats = compute_statistics([0.0, 10.0])
    assert stats.expected_min == 0.0


def test_z_threshold_is_inclusive():
    at_threshold = classify("load_delay", 125.0, HISTORY, min_samples=10, z_threshold=2.5)
    below = classify("load_delay", 124.9, HISTORY, min_samples=10, z_threshold=2.5)

    assert at_threshold.verdict is Verdict.ANOMALOUS_REGRESSION
    assert at_threshold.z_score == pytest.approx(2.5)
    assert at_threshold.confidence == 0.987
    assert below.verdict is Verdict.NORMAL


def test_polarity_decides_regression_or_improvement():
    slower = classify("load_delay", 130.0, HISTORY, min_samples=10, z_threshold=2.5)
    faster = classify("load_delay", 70.0, HISTORY, min_samples=10, z_threshold=2.5)
    lower_score = classify("overall_score", 70.0, HISTORY, min_samples=10, z_threshold=2.5)
    higher_score = classify("overall_score", 130.0, HISTORY, min_samples=10, z_threshold=2.5)

    assert slower.is_regression
    assert faster.verdict is Verdict.ANOMALOUS_IMPROVEMENT
    assert lower_score.is_regression
    assert higher_score.verdict is Verdict.ANOMALOUS_IMPROVEMENT


def test_insufficient_history_is_skipped():
    result = classify("load_delay", 500.0, HISTORY[:9], min_samples=10, z_threshold=2.5)

    assert result.verdict is Verdict.SKIPPED
    assert result.skip_reason is SkipReason.INSUFFICIENT_HISTORY


def test_zero_variance_is_skipped():
    result = classify("load_delay", 500.0, [100.0] * 10, min_samples=10, z_threshold=2.5)

    assert result.verdict is Verdict.SKIPPED
    assert result.skip_reason is SkipReason.ZERO_VARIANCE


@pytest.mark.parametrize(
    ("abs_z", "expected"),
    [(3.2, 0.997), (3.0, 0.997), (2.7, 0.987), (2.0, 0.954), (1.6, 0.866), (1.0, 0.68)],
)
def test_confidence_tiers(abs_z, expected):
    assert confidence_for(abs_z) == expected


@pytest.mark.parametrize(
    "history",
    [
        [0.11] * 10,
        [0.1 + 0.2, 0.3] * 5,  # differ only in the last bit
    ],
)
def test_constant_window_with_rounding_noise_is_skipped(history):
    result = classify("visual_stability", 0.12, history, min_samples=10, z_threshold=2.5)

    assert result.verdict is Verdict.SKIPPED
    assert result.skip_reason is SkipReason.ZERO_VARIANCE
    assert result.z_score is None


def test_small_but_real_spread_is_not_constant():
    stats = compute_statistics([0.10, 0.11] * 5)

    assert not stats.is_constant
    assert classify("visual_stability", 0.2, [0.10, 0.11] * 5, min_samples=10, z_threshold=2.5).is_regression
