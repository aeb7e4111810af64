"""
Per-observation learning pipeline shared by the real-time handler and backfill.

Both paths call exactly these functions, which is what keeps a backfilled
record identical to one built event-by-event in real time.

Line-item order (all checks read the PRE-update record):
  1. anomaly detector
  2. streaming stats (Welford, adaptive EWMA, regression)
  3. feedback loop (scores the forecast that stood before this order)
  4. interval tracker
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from ml.activity import classify_activity
from ml.anomaly import AnomalyResult, check_order_anomaly
from ml.confidence import calculate_confidence, days_since
from ml.feedback_loop import AccuracyUpdate, apply_accuracy, apply_bias_correction, compute_mape, score_prediction
from ml.streaming_stats import CustomerCropState, apply_interval, apply_quantity
from ml.trend import trend_for


@dataclass(frozen=True)
class LineItemOutcome:
    anomaly: AnomalyResult
    accuracy: AccuracyUpdate | None
    prior_mean: float
    prior_count: int


def new_customer_crop_state(
    stats_key: str,
    *,
    customer_key: str,
    crop_key: str,
    customer_name: str | None = None,
    crop_display_name: str | None = None,
) -> CustomerCropState:
    return CustomerCropState(
        stats_key=stats_key,
        customer_key=customer_key,
        crop_key=crop_key,
        customer_name=customer_name or customer_key,
        crop_display_name=crop_display_name or "Unknown",
    )


def process_line_item(
    state: CustomerCropState,
    quantity: float,
    order_date: datetime,
    *,
    customer_name: str | None = None,
    crop_display_name: str | None = None,
) -> LineItemOutcome:
    """Apply one qualifying line item to ``state`` in place."""
    prior_mean, prior_count = state.mean, state.count
    anomaly = check_order_anomaly(quantity, state)
    accuracy = score_prediction(quantity, state)

    apply_quantity(state, quantity)
    apply_accuracy(state, accuracy)
    apply_interval(state, order_date)

    if customer_name:
        state.customer_name = customer_name
    if crop_display_name:
        state.crop_display_name = crop_display_name
    return LineItemOutcome(anomaly=anomaly, accuracy=accuracy, prior_mean=prior_mean, prior_count=prior_count)


def refresh_presentation(state: CustomerCropState, now: datetime) -> CustomerCropState:
    """
    Re-derive every presentation field from the stored sums.

    Pure function of the accumulators and ``now``: running it twice with the
    same inputs yields identical fields.
    """
    confidence = calculate_confidence(state, now)
    trend = trend_for(state)
    adjusted, corrected = apply_bias_correction(state.ewma, state.running_bias)
    elapsed = days_since(state.last_order_date, now)

    state.confidence = confidence.score
    state.confidence_level = confidence.level
    state.confidence_components = confidence.components
    state.trend = trend.trend
    state.trend_slope = trend.slope
    state.trend_weekly_change_pct = trend.weekly_change_pct
    state.adjusted_ewma = adjusted
    state.bias_corrected = corrected
    state.mape = compute_mape(state.total_predictions, state.sum_abs_percent_error)
    state.activity_flag = classify_activity(elapsed, state.avg_days_between_orders)
    state.days_since_last_order = round(elapsed) if elapsed is not None else None
    return state
