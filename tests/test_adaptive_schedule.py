"""Tests for the adaptive area scheduling policy."""

from datetime import datetime, timedelta

import pytest

from listing_tracker.detect.adaptive_schedule import AdaptiveSchedulePolicy


@pytest.fixture
def policy():
    return AdaptiveSchedulePolicy(min_interval_hours=1, max_interval_hours=48, saturation_rate=0.5, smoothing=0.3)


def test_quiet_area_gets_max_interval(policy):
    assert policy.interval_hours(0.0) == 48


def test_saturated_area_gets_min_interval(policy):
    assert policy.interval_hours(0.5) == 1
    assert policy.interval_hours(1.0) == 1


def test_interval_is_non_increasing_and_bounded(policy):
    rates = [i / 100 for i in range(0, 101)]
    intervals = [policy.interval_hours(rate) for rate in rates]
    assert all(a >= b for a, b in zip(intervals, intervals[1:]))
    assert all(1 <= hours <= 48 for hours in intervals)


def test_out_of_range_rates_are_clamped(policy):
    assert policy.interval_hours(-0.2) == 48
    assert policy.interval_hours(7) == 1


def test_smoothing(policy):
    assert policy.smooth(None, 0.4) == 0.4
    assert policy.smooth(0.0, 1.0) == pytest.approx(0.3)
    assert policy.smooth(0.5, 0.5) == pytest.approx(0.5)


def test_next_scrape(policy):
    last = datetime(2024, 5, 1, 12)
    assert policy.next_scrape(last, 6) == last + timedelta(hours=6)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"min_interval_hours": 0},
        {"min_interval_hours": 10, "max_interval_hours": 5},
        {"saturation_rate": 0},
        {"smoothing": 0},
        {"smoothing": 1.5},
    ],
)
def test_invalid_parameters_are_rejected(kwargs):
    with pytest.raises(ValueError):
        AdaptiveSchedulePolicy(**kwargs)


def test_from_settings_uses_configured_bounds():
    policy = AdaptiveSchedulePolicy.from_settings()
    assert policy.min_interval_hours <= policy.max_interval_hours
