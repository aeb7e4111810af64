"""
Forecast Confidence Scoring.

Four components, 25 points each, summed and rounded to 0-100:

  data         How much history?        min(count / 20, 1) * 25
  consistency  How stable is quantity?  25 * (1 - min(cv, 1))
  recency      How fresh is the data?   25 * (1 - min(days_since_last / 84, 1))
  regularity   How regular is cadence?  25 * (1 - min(interval_cv, 1))
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from ml.streaming_stats import CustomerCropState, days_between

DATA_THRESHOLD = 20
RECENCY_DECAY_DAYS = 84  # 12 weeks
COMPONENT_WEIGHT = 25

CONFIDENCE_LEVELS = {
    "high": 70,
    "medium": 40,
}


@dataclass(frozen=True)
class ConfidenceScore:
    score: int
    level: str
    data: float
    consistency: float
    recency: float
    regularity: float

    @property
    def components(self) -> dict[str, int]:
        return {
            "data": round(self.data),
            "consistency": round(self.consistency),
            "recency": round(self.recency),
            "regularity": round(self.regularity),
        }


def classify_confidence(score: float) -> str:
    if score >= CONFIDENCE_LEVELS["high"]:
        return "high"
    if score >= CONFIDENCE_LEVELS["medium"]:
        return "medium"
    return "low"


def days_since(last: datetime | None, now: datetime) -> float | None:
    if last is None:
        return None
    return days_between(last, now)


def calculate_confidence(state: CustomerCropState, now: datetime) -> ConfidenceScore:
    data_score = min(state.count / DATA_THRESHOLD, 1) * COMPONENT_WEIGHT

    if state.count >= 2 and state.mean > 0:
        cv = state.stddev / state.mean
    else:
        cv = 1.0
    consistency_score = COMPONENT_WEIGHT * (1 - min(cv, 1))

    elapsed = days_since(state.last_order_date, now)
    if elapsed is None:
        elapsed = RECENCY_DECAY_DAYS
    recency_score = COMPONENT_WEIGHT * (1 - min(max(elapsed, 0.0) / RECENCY_DECAY_DAYS, 1))

    if state.avg_days_between_orders and state.interval_stddev is not None:
        interval_cv = state.interval_stddev / state.avg_days_between_orders
    else:
        interval_cv = 1.0
    regularity_score = COMPONENT_WEIGHT * (1 - min(interval_cv, 1))

    total = round(data_score + consistency_score + recency_score + regularity_score)
    return ConfidenceScore(
        score=total,
        level=classify_confidence(total),
        data=data_score,
        consistency=consistency_score,
        recency=recency_score,
        regularity=regularity_score,
    )
