from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from sigcorr.core.stats import (
    compute_baseline,
    grouping_velocity,
    hourly_buckets,
    mean_std,
    percentage_increase,
    seasonal_buckets,
    spike_threshold,
    z_score,
)

NOW = datetime(2026, 3, 10, 12, 30, 0)


def test_velocity_floors_elapsed_time_at_six_minutes():
    first = NOW
    assert grouping_velocity(2, first, first + timedelta(seconds=30)) == pytest.approx(20.0)
    assert grouping_velocity(4, first, first + timedelta(hours=2)) == pytest.approx(2.0)


def test_spike_threshold_has_hard_floor():
    # 24 events over 24h -> 1/h long-term, 3/h < floor of 10
    assert spike_threshold(24, NOW - timedelta(hours=24), NOW) == pytest.approx(10.0)
    # 600 events over 10h -> 60/h, threshold 180
    assert spike_threshold(600, NOW - timedelta(hours=10), NOW) == pytest.approx(180.0)


def test_spike_threshold_floors_hours_active_at_one():
    assert spike_threshold(50, NOW - timedelta(minutes=5), NOW) == pytest.approx(150.0)


def test_population_mean_std():
    mean, std = mean_std([2, 4, 4, 4, 5, 5, 7, 9])
    assert mean == pytest.approx(5.0)
    assert std == pytest.approx(2.0)
    assert mean_std([]) == (0.0, 0.0)


def test_guards():
    assert z_score(10, 2, 0) == 0.0
    assert percentage_increase(10, 0) == 0.0
    assert z_score(10, 2, 2) == pytest.approx(4.0)
    assert percentage_increase(15, 5) == pytest.approx(200.0)


def test_hourly_buckets_newest_last():
    ts = [NOW - timedelta(minutes=10), NOW - timedelta(minutes=50), NOW - timedelta(hours=2, minutes=1),
          NOW - timedelta(hours=30)]
    buckets = hourly_buckets(ts, NOW, 3)
    assert buckets == [1, 0, 2]


def test_seasonal_buckets_pick_same_hour_on_previous_days():
    ts = [
        datetime(2026, 3, 9, 12, 5),    # yesterday, same hour
        datetime(2026, 3, 9, 12, 59),   # yesterday, same hour
        datetime(2026, 3, 8, 12, 0),    # two days ago, same hour
        datetime(2026, 3, 9, 13, 0),    # yesterday, next hour
        datetime(2026, 3, 10, 12, 10),  # today, excluded from the seasonal sample
    ]
    assert seasonal_buckets(ts, NOW, 3) == [0, 1, 2]


def test_baseline_prefers_seasonal_statistics():
    ts = [datetime(2026, 3, 9, 12, 5), datetime(2026, 3, 8, 12, 5), NOW - timedelta(minutes=1)]
    stats = compute_baseline(ts, NOW, window_hours=24, lookback_days=2)
    assert stats.seasonal
    assert stats.seasonal_hour == 12
    assert stats.mean == pytest.approx(1.0)
    assert stats.std_dev == pytest.approx(0.0)
    assert stats.current_count == 1
    assert stats.sample_count == 2


def test_baseline_falls_back_to_rolling_window():
    ts = [NOW - timedelta(minutes=m) for m in (1, 2, 3, 70)]
    stats = compute_baseline(ts, NOW, window_hours=4, lookback_days=7)
    assert not stats.seasonal
    assert stats.current_count == 3
    assert stats.mean == pytest.approx(1.0)
    assert stats.sample_count == 4
