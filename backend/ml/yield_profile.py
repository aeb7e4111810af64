"""
Yield Profile Tracker — per-crop running yield-per-tray statistics.

Same Welford recurrence as the order stats, with one difference: extreme
harvests are REJECTED, not absorbed. Once a crop has 5+ harvests, a new
yield-per-tray more than 3 stddev from the mean raises a yield_outlier alert
and leaves the profile untouched (a dropped tray shouldn't shift planning).

The production buffer is the extra % to plant to absorb yield variability:
15% until 3 harvests exist, then clamp(cv * 100 * 1.5, 5, 30).
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import datetime
from typing import Any

from ml.streaming_stats import sample_stddev, update_ewma, welford_update

OUTLIER_ZSCORE = 3
MIN_HARVESTS_FOR_OUTLIER = 5
YIELD_EWMA_ALPHA = 0.3

DEFAULT_BUFFER_PERCENT = 15
MIN_HARVESTS_FOR_BUFFER = 3
BUFFER_CV_MULTIPLIER = 1.5
BUFFER_BOUNDS = (5, 30)


@dataclass
class YieldState:
    crop_id: str
    profile_yield_per_tray: float = 0.0
    actual_yield_estimate: float | None = None
    yield_count: int = 0
    yield_mean: float = 0.0
    yield_m2: float = 0.0
    yield_stddev: float = 0.0
    adjusted_buffer_percent: float = DEFAULT_BUFFER_PERCENT
    last_harvest_date: datetime | None = None

    @classmethod
    def from_record(cls, record: Any) -> "YieldState":
        return cls(**{f.name: getattr(record, f.name) for f in fields(cls)})

    def to_values(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class YieldOutcome:
    yield_per_tray: float
    outlier: bool
    z_score: float | None = None


def calculate_production_buffer(yield_count: int, yield_mean: float, yield_stddev: float) -> int:
    if yield_count < MIN_HARVESTS_FOR_BUFFER:
        return DEFAULT_BUFFER_PERCENT
    cv = yield_stddev / yield_mean if yield_mean > 0 else 0.0
    low, high = BUFFER_BOUNDS
    return round(min(high, max(low, cv * 100 * BUFFER_CV_MULTIPLIER)))


def check_yield_outlier(yield_per_tray: float, state: YieldState) -> float | None:
    """Return the z-score when the observation must be rejected, else None."""
    if state.yield_count < MIN_HARVESTS_FOR_OUTLIER:
        return None
    stddev = sample_stddev(state.yield_count, state.yield_m2)
    if stddev <= 0:
        return None
    z_score = (yield_per_tray - state.yield_mean) / stddev
    if abs(z_score) > OUTLIER_ZSCORE:
        return z_score
    return None


def apply_yield_observation(
    state: YieldState,
    yield_per_tray: float,
    harvested_at: datetime | None,
) -> YieldOutcome:
    """Gate, then update ``state`` in place. Rejected observations leave it unchanged."""
    z_score = check_yield_outlier(yield_per_tray, state)
    if z_score is not None:
        return YieldOutcome(yield_per_tray=yield_per_tray, outlier=True, z_score=round(z_score, 2))

    count, mean, m2 = welford_update(state.yield_count, state.yield_mean, state.yield_m2, yield_per_tray)
    stddev = sample_stddev(count, m2)
    state.yield_count = count
    state.yield_mean = mean
    state.yield_m2 = m2
    state.yield_stddev = stddev
    state.actual_yield_estimate = update_ewma(state.actual_yield_estimate, yield_per_tray, YIELD_EWMA_ALPHA)
    state.adjusted_buffer_percent = calculate_production_buffer(count, mean, stddev)
    if harvested_at is not None:
        state.last_harvest_date = harvested_at
    return YieldOutcome(yield_per_tray=yield_per_tray, outlier=False)
