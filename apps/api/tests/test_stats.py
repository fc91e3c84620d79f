import pytest

from analysis.stats import (
    classify_tier,
    engagement_rate,
    percentile,
    ratio_status,
    safe_ratio,
    tier_span,
    widen_tiers,
)


@pytest.mark.parametrize(
    "subscribers,expected",
    [
        (0, "emerging"),
        (9_999, "emerging"),
        (10_000, "growing"),
        (99_999, "growing"),
        (100_000, "established"),
        (500_000, "major"),
        (999_999, "major"),
        (1_000_000, "elite"),
        (250_000_000, "elite"),
    ],
)
def test_classify_tier_uses_half_open_ranges(subscribers, expected):
    assert classify_tier(subscribers) == expected


def test_classify_tier_rejects_negative_counts():
    with pytest.raises(ValueError):
        classify_tier(-1)


def test_widen_tiers_clamps_at_both_ends():
    assert widen_tiers("emerging") == ["emerging", "growing"]
    assert widen_tiers("growing") == ["emerging", "growing", "established"]
    assert widen_tiers("elite") == ["major", "elite"]


def test_widen_tiers_unknown_tier():
    with pytest.raises(ValueError):
        widen_tiers("legendary")


def test_tier_span_is_unbounded_when_elite_included():
    assert tier_span(["emerging", "growing", "established"]) == (0, 500_000)
    assert tier_span(["major", "elite"]) == (500_000, None)


def test_percentile_nearest_rank():
    values = [10, 20, 30, 40]
    assert percentile(values, 50) == 20
    assert percentile(values, 25) == 10
    assert percentile(values, 75) == 30
    assert percentile([], 50) == 0
    assert percentile([7], 99) == 7


def test_percentile_odd_length_examples():
    values = [10, 20, 30, 40, 50]
    assert percentile(values, 50) == 30
    assert percentile(values, 25) == 20
    assert percentile(values, 75) == 40


def test_ratio_status_thresholds():
    assert ratio_status(1.2) == "above"
    assert ratio_status(1.19) == "at"
    assert ratio_status(0.8) == "at"
    assert ratio_status(0.79) == "below"
    assert ratio_status(0.7) == "below"
    assert ratio_status(0.9) == "at"


def test_safe_ratio_and_engagement_rate():
    assert safe_ratio(10, 0) is None
    assert safe_ratio(10, 5) == 2
    assert engagement_rate(0, 3, 2) == 5
    assert engagement_rate(1000, 40, 10) == pytest.approx(0.05)
