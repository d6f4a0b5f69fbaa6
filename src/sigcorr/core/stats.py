from __future__ import annotations

import statistics
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Sequence, Tuple

HOUR = timedelta(hours=1)


def hours_between(later: datetime, earlier: datetime) -> float:
    return (later - earlier).total_seconds() / 3600.0


def grouping_velocity(count_after: int, first_seen_at: datetime, occurred_at: datetime, floor_hours: float = 0.1) -> float:
    """Occurrences per hour since the group opened.

    The elapsed time is floored (6 minutes by default) so a burst of events
    does not divide by zero.
    """
    hours = max(hours_between(occurred_at, first_seen_at), floor_hours)
    return count_after / hours


def spike_threshold(
    total_count: int,
    first_seen_at: datetime,
    now: datetime,
    multiplier: float = 3.0,
    floor_per_hour: float = 10.0,
) -> float:
    """max(long-term velocity * multiplier, floor); hours active floored at 1."""
    hours_active = max(hours_between(now, first_seen_at), 1.0)
    long_term = total_count / hours_active
    return max(long_term * multiplier, floor_per_hour)


def mean_std(values: Sequence[float]) -> Tuple[float, float]:
    """Population mean and standard deviation; (0, 0) for no values."""
    if not values:
        return 0.0, 0.0
    return statistics.fmean(values), statistics.pstdev(values)


def hourly_buckets(timestamps: Iterable[datetime], now: datetime, window_hours: int) -> List[int]:
    """Count events per hour over the trailing window, oldest bucket first.

    The last bucket covers (now - 1h, now]. Timestamps slightly ahead of
    ``now`` (clock skew) land in the newest bucket.
    """
    counts = [0] * window_hours
    for ts in timestamps:
        age = (now - ts).total_seconds()
        if age < 0:
            age = 0.0
        idx = int(age // 3600)
        if idx >= window_hours:
            continue
        counts[window_hours - 1 - idx] += 1
    return counts


def seasonal_buckets(timestamps: Iterable[datetime], now: datetime, lookback_days: int) -> List[int]:
    """Counts in the same hour-of-day as ``now`` on each previous day, oldest first."""
    hour_start = now.replace(minute=0, second=0, microsecond=0)
    slots = [(hour_start - timedelta(days=d), hour_start - timedelta(days=d) + HOUR)
             for d in range(lookback_days, 0, -1)]
    counts = [0] * lookback_days
    for ts in timestamps:
        for i, (start, end) in enumerate(slots):
            if start <= ts < end:
                counts[i] += 1
                break
    return counts


def z_score(current: float, mean: float, std_dev: float) -> float:
    if std_dev == 0:
        return 0.0
    return (current - mean) / std_dev


def percentage_increase(current: float, mean: float) -> float:
    if mean == 0:
        return 0.0
    return (current - mean) / mean * 100.0


@dataclass
class BaselineStats:
    mean: float
    std_dev: float
    current_count: int
    rolling_mean: float
    rolling_std_dev: float
    seasonal_mean: Optional[float]
    seasonal_std_dev: Optional[float]
    seasonal_hour: Optional[int]
    sample_count: int
    window_hours: int

    @property
    def seasonal(self) -> bool:
        return self.seasonal_mean is not None


def compute_baseline(
    timestamps: Sequence[datetime],
    now: datetime,
    window_hours: int = 24,
    lookback_days: int = 7,
) -> BaselineStats:
    """Rolling hourly baseline with a same-hour-of-day seasonal override.

    Seasonal statistics replace the rolling ones whenever any previous day
    recorded events in the current hour-of-day.
    """
    buckets = hourly_buckets(timestamps, now, window_hours)
    rolling_mean, rolling_std = mean_std(buckets)
    current = buckets[-1] if buckets else 0

    season = seasonal_buckets(timestamps, now, lookback_days)
    if any(season):
        s_mean, s_std = mean_std(season)
        return BaselineStats(
            mean=s_mean,
            std_dev=s_std,
            current_count=current,
            rolling_mean=rolling_mean,
            rolling_std_dev=rolling_std,
            seasonal_mean=s_mean,
            seasonal_std_dev=s_std,
            seasonal_hour=now.hour,
            sample_count=len(season),
            window_hours=window_hours,
        )
    return BaselineStats(
        mean=rolling_mean,
        std_dev=rolling_std,
        current_count=current,
        rolling_mean=rolling_mean,
        rolling_std_dev=rolling_std,
        seasonal_mean=None,
        seasonal_std_dev=None,
        seasonal_hour=None,
        sample_count=len(buckets),
        window_hours=window_hours,
    )
