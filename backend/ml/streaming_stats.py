"""
Streaming Statistics — single-pass accumulators for one customer-crop pair.

  - Welford running mean/variance on order quantity
  - Adaptive EWMA forecast (alpha depends on history length and cadence)
  - Online linear-regression sums (x = the pair's own order sequence)
  - Days-between-orders tracker (Welford on the interval)

Observations MUST be applied in ascending chronological order per pair: both
the regression x axis and the EWMA are order-index sensitive, so replaying
out of order silently produces different accumulators.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Any

SECONDS_PER_DAY = 86400.0

# alpha ≈ 2/(N+1) for an N-period simple moving average window
EWMA_ALPHA = {
    "new_customer": 0.40,  # <5 orders, ~4 period window
    "biweekly": 0.15,  # avg interval >10 days, ~12 period window
    "weekly": 0.25,  # ~8 period window
}
NEW_CUSTOMER_ORDERS = 5
BIWEEKLY_INTERVAL_DAYS = 10


@dataclass
class CustomerCropState:
    """In-memory mirror of a customer_crop_stats record."""

    stats_key: str
    customer_key: str
    crop_key: str
    customer_name: str | None = None
    crop_display_name: str | None = None

    count: int = 0
    mean: float = 0.0
    m2: float = 0.0

    ewma: float | None = None
    ewma_alpha: float = EWMA_ALPHA["weekly"]

    sum_x: float = 0.0
    sum_y: float = 0.0
    sum_xy: float = 0.0
    sum_x2: float = 0.0

    first_order_date: datetime | None = None
    last_order_date: datetime | None = None
    last_quantity: float = 0.0
    interval_count: int = 0
    avg_days_between_orders: float | None = None
    interval_m2: float = 0.0
    interval_stddev: float | None = None

    total_predictions: int = 0
    sum_abs_percent_error: float = 0.0
    running_bias: float = 0.0

    confidence: int | None = None
    confidence_level: str | None = None
    confidence_components: dict[str, int] | None = None
    trend: str | None = None
    trend_slope: float | None = None
    trend_weekly_change_pct: float | None = None
    adjusted_ewma: float | None = None
    bias_corrected: bool = False
    mape: float | None = None
    activity_flag: str | None = None
    days_since_last_order: int | None = None

    @property
    def stddev(self) -> float:
        return sample_stddev(self.count, self.m2)

    @classmethod
    def from_record(cls, record: Any) -> "CustomerCropState":
        """Build from any object exposing the same attribute names (ORM row, namespace)."""
        return cls(**{f.name: getattr(record, f.name) for f in fields(cls)})

    def to_values(self) -> dict[str, Any]:
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        if values["confidence_components"] is not None:
            values["confidence_components"] = dict(values["confidence_components"])
        return values


def welford_update(count: int, mean: float, m2: float, value: float) -> tuple[int, float, float]:
    """One step of Welford's algorithm. Returns (count', mean', m2')."""
    count += 1
    delta = value - mean
    mean += delta / count
    delta2 = value - mean
    m2 += delta * delta2
    return count, mean, max(m2, 0.0)


def sample_stddev(count: int, m2: float) -> float:
    if count < 2:
        return 0.0
    return math.sqrt(m2 / (count - 1))


def update_ewma(previous: float | None, value: float, alpha: float) -> float:
    if previous is None:
        return value
    return alpha * value + (1 - alpha) * previous


def select_alpha(state: CustomerCropState) -> float:
    """Pick the smoothing factor from the pre-update record."""
    if state.count < NEW_CUSTOMER_ORDERS:
        return EWMA_ALPHA["new_customer"]
    if state.avg_days_between_orders and state.avg_days_between_orders > BIWEEKLY_INTERVAL_DAYS:
        return EWMA_ALPHA["biweekly"]
    return EWMA_ALPHA["weekly"]


def days_between(earlier: datetime, later: datetime) -> float:
    return (later - earlier).total_seconds() / SECONDS_PER_DAY


def apply_quantity(state: CustomerCropState, quantity: float) -> CustomerCropState:
    """Welford + adaptive EWMA + regression sums for one observation (mutates ``state``)."""
    alpha = select_alpha(state)
    state.count, state.mean, state.m2 = welford_update(state.count, state.mean, state.m2, quantity)
    state.ewma = update_ewma(state.ewma, quantity, alpha)
    state.ewma_alpha = alpha

    x = state.count
    state.sum_x += x
    state.sum_y += quantity
    state.sum_xy += x * quantity
    state.sum_x2 += x * x
    state.last_quantity = quantity
    return state


def apply_interval(state: CustomerCropState, order_date: datetime) -> CustomerCropState:
    """Track days between orders; same-day or earlier observations leave it untouched."""
    if state.last_order_date is not None:
        gap = days_between(state.last_order_date, order_date)
        if gap > 0:
            count, mean, m2 = welford_update(
                state.interval_count,
                state.avg_days_between_orders or 0.0,
                state.interval_m2,
                gap,
            )
            state.interval_count = count
            state.avg_days_between_orders = mean
            state.interval_m2 = m2
            state.interval_stddev = sample_stddev(count, m2) if count >= 2 else None

    if state.first_order_date is None:
        state.first_order_date = order_date
    state.last_order_date = order_date
    return state

