"""
Trend classification from the online regression sums.

slope = (n*Σxy - Σx*Σy) / (n*Σx² - (Σx)²), with x = order sequence. The x axis
counts orders, not days, so a customer who orders more often looks steeper
than one who orders the same quantities further apart.
"""

from __future__ import annotations

from dataclasses import dataclass

from ml.streaming_stats import CustomerCropState

MIN_ORDERS = 4
INCREASING_PCT = 5
DECREASING_PCT = -5


@dataclass(frozen=True)
class TrendResult:
    trend: str
    slope: float | None
    weekly_change_pct: float | None


def get_trend(n: int, sum_x: float, sum_y: float, sum_xy: float, sum_x2: float) -> TrendResult:
    if n < MIN_ORDERS:
        return TrendResult(trend="insufficient_data", slope=None, weekly_change_pct=None)

    denominator = n * sum_x2 - sum_x * sum_x
    if denominator == 0:
        return TrendResult(trend="stable", slope=0.0, weekly_change_pct=0.0)

    slope = (n * sum_xy - sum_x * sum_y) / denominator
    mean = sum_y / n
    pct = slope / mean * 100 if mean != 0 else 0.0

    if pct > INCREASING_PCT:
        trend = "increasing"
    elif pct < DECREASING_PCT:
        trend = "decreasing"
    else:
        trend = "stable"
    return TrendResult(trend=trend, slope=round(slope, 2), weekly_change_pct=round(pct, 1))


def trend_for(state: CustomerCropState) -> TrendResult:
    return get_trend(state.count, state.sum_x, state.sum_y, state.sum_xy, state.sum_x2)
