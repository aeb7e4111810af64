"""
ML Feedback Loop — Score the standing EWMA forecast against what was ordered.

Every new order for a customer-crop pair is also a test of the forecast that
existed just before it. The loop keeps:

  - total_predictions / sum_abs_percent_error: running MAPE accumulators
  - running_bias: an EWMA of the signed error (actual - forecast)

At read time a persistent bias nudges the forecast:
  |running_bias| > 10  →  adjusted_ewma = ewma * (1 + running_bias / 100)

Key insight: if a chef consistently orders more than we predict, the raw
EWMA lags; the bias term corrects it until the EWMA catches up.
"""

from __future__ import annotations

from dataclasses import dataclass

from ml.streaming_stats import CustomerCropState

BIAS_ALPHA = 0.3
BIAS_CORRECTION_THRESHOLD = 10

ACCURACY_BANDS = {
    "excellent": 15,  # MAPE <= 15%
    "acceptable": 25,  # MAPE <= 25%
}


@dataclass(frozen=True)
class AccuracyUpdate:
    percent_error: float
    signed_error: float
    total_predictions: int
    sum_abs_percent_error: float
    running_bias: float


def score_prediction(actual: float, state: CustomerCropState) -> AccuracyUpdate | None:
    """Compare the prior forecast to a new observation. None when there was nothing to score."""
    predicted = state.ewma
    if predicted is None or actual <= 0:
        return None

    percent_error = abs(actual - predicted) / actual * 100
    signed_error = actual - predicted
    return AccuracyUpdate(
        percent_error=percent_error,
        signed_error=signed_error,
        total_predictions=state.total_predictions + 1,
        sum_abs_percent_error=state.sum_abs_percent_error + percent_error,
        running_bias=BIAS_ALPHA * signed_error + (1 - BIAS_ALPHA) * (state.running_bias or 0.0),
    )


def apply_accuracy(state: CustomerCropState, update: AccuracyUpdate | None) -> CustomerCropState:
    if update is not None:
        state.total_predictions = update.total_predictions
        state.sum_abs_percent_error = update.sum_abs_percent_error
        state.running_bias = update.running_bias
    return state


def apply_bias_correction(ewma: float | None, running_bias: float | None) -> tuple[float | None, bool]:
    """Return (adjusted_ewma, bias_corrected)."""
    if not ewma or abs(running_bias or 0.0) <= BIAS_CORRECTION_THRESHOLD:
        return ewma, False
    return round(ewma * (1 + running_bias / 100), 2), True


def compute_mape(total_predictions: int, sum_abs_percent_error: float) -> float | None:
    if not total_predictions:
        return None
    return round(sum_abs_percent_error / total_predictions, 2)


def classify_accuracy(mape: float | None) -> str | None:
    if mape is None:
        return None
    if mape <= ACCURACY_BANDS["excellent"]:
        return "excellent"
    if mape <= ACCURACY_BANDS["acceptable"]:
        return "acceptable"
    return "poor"
