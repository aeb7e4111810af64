"""
Order Anomaly Detection — sample-size-dependent outlier checks.

Runs against the PRE-update customer-crop record:

  - <5 prior orders: absolute bounds (flag if > 5x or < 0.1x the mean).
    Too few points for a meaningful stddev, so confidence is "low".
  - >=5 prior orders: z-score against the running mean/stddev.
    Threshold 3.0 while the pair has <10 orders, 2.5 afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass

from ml.streaming_stats import CustomerCropState

MIN_ORDERS_FOR_ZSCORE = 5
MIN_ORDERS_FOR_HIGH_CONFIDENCE = 10

ANOMALY_THRESHOLDS = {
    "few_orders": 3.0,  # 5-9 orders, wider tolerance
    "normal": 2.5,  # 10+ orders
}

ABSOLUTE_BOUNDS = {
    "high_multiplier": 5.0,
    "low_multiplier": 0.1,
}


@dataclass(frozen=True)
class AnomalyResult:
    is_anomaly: bool
    method: str
    confidence: str
    z_score: float | None = None
    expected_range: tuple[float, float] | None = None

    def to_dict(self) -> dict:
        return {
            "is_anomaly": self.is_anomaly,
            "z_score": self.z_score,
            "method": self.method,
            "confidence": self.confidence,
            "expected_range": list(self.expected_range) if self.expected_range else None,
        }


def check_order_anomaly(quantity: float, state: CustomerCropState) -> AnomalyResult:
    """Classify ``quantity`` against the pair's history (must run before the update)."""
    if state.count < MIN_ORDERS_FOR_ZSCORE:
        return _absolute_bounds(quantity, state.mean)

    stddev = state.stddev
    if stddev == 0:
        return AnomalyResult(is_anomaly=False, method="zscore", confidence="low", z_score=0.0)

    threshold = (
        ANOMALY_THRESHOLDS["few_orders"]
        if state.count < MIN_ORDERS_FOR_HIGH_CONFIDENCE
        else ANOMALY_THRESHOLDS["normal"]
    )
    z_score = (quantity - state.mean) / stddev
    return AnomalyResult(
        is_anomaly=abs(z_score) > threshold,
        method="zscore",
        confidence="high" if state.count >= MIN_ORDERS_FOR_HIGH_CONFIDENCE else "medium",
        z_score=round(z_score, 2),
        expected_range=(
            max(0.0, round(state.mean - threshold * stddev, 2)),
            round(state.mean + threshold * stddev, 2),
        ),
    )


def _absolute_bounds(quantity: float, mean: float) -> AnomalyResult:
    if mean <= 0:
        return AnomalyResult(is_anomaly=False, method="absolute_bounds", confidence="low")

    high = mean * ABSOLUTE_BOUNDS["high_multiplier"]
    low = mean * ABSOLUTE_BOUNDS["low_multiplier"]
    return AnomalyResult(
        is_anomaly=quantity > high or quantity < low,
        method="absolute_bounds",
        confidence="low",
        expected_range=(round(low, 2), round(high, 2)),
    )
