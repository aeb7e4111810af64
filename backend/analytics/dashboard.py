"""
Dashboard aggregation over the refreshed customer-crop records.

Shared by the nightly job and the backfill so both leave the same singleton
row behind for the same stored state.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

import pandas as pd

from ml.streaming_stats import CustomerCropState

TOP_CROPS = 8
TRAILING_WEEKS = 4
CONFIDENCE_LEVEL_SCORES = {"high": 85, "medium": 55, "low": 20}


def _merge_trends(trends: pd.Series) -> str:
    values = set(trends)
    if "increasing" in values:
        return "increasing"
    if "decreasing" in values:
        return "decreasing"
    return "stable"


def top_crops(states: list[CustomerCropState], limit: int = TOP_CROPS) -> list[dict[str, Any]]:
    rows = [
        {
            "crop": s.crop_key,
            "volume": (s.mean or 0.0) * s.count,
            "ewma": s.adjusted_ewma or s.ewma or 0.0,
            "confidence": s.confidence or 0,
            "trend": s.trend,
        }
        for s in states
        if s.crop_key and s.count
    ]
    if not rows:
        return []

    frame = pd.DataFrame(rows)
    grouped = (
        frame.groupby("crop")
        .agg(
            volume=("volume", "sum"),
            ewma=("ewma", "sum"),
            customers=("volume", "size"),
            confidence=("confidence", "max"),
            trend=("trend", _merge_trends),
        )
        .reset_index()
        .sort_values(["volume", "crop"], ascending=[False, True])
        .head(limit)
    )
    return [
        {
            "crop": row.crop,
            "ewma": round(float(row.ewma), 2),
            "customers": int(row.customers),
            "confidence": int(row.confidence),
            "trend": row.trend,
        }
        for row in grouped.itertuples(index=False)
    ]


def customer_health(states: list[CustomerCropState]) -> dict[str, int]:
    active = {s.customer_key for s in states if s.last_order_date is not None and s.activity_flag == "active"}
    return {
        "active": len(active),
        "at_risk": sum(1 for s in states if s.activity_flag == "at_risk"),
        "churned": sum(1 for s in states if s.activity_flag == "churned"),
    }


def trailing_weekly_revenue(buckets: list[dict[str, Any]], now: datetime) -> float:
    cutoff = (now - timedelta(weeks=TRAILING_WEEKS)).date().isoformat()
    revenue = sum(b["total_revenue"] or 0.0 for b in buckets if b["bucket_date"] >= cutoff)
    return round(revenue / TRAILING_WEEKS, 2)


def build_dashboard(
    states: list[CustomerCropState],
    buckets: list[dict[str, Any]],
    *,
    monthly_summary_count: int,
    alert_count: int,
    now: datetime,
) -> dict[str, Any]:
    """
    Shape the dashboard row. ``states`` must already carry refreshed
    presentation fields (confidence level, MAPE, activity flag).
    """
    distribution = {"high": 0, "medium": 0, "low": 0}
    for s in states:
        if s.confidence_level in distribution:
            distribution[s.confidence_level] += 1

    mapes = [s.mape for s in states if s.mape is not None]
    avg_mape = round(sum(mapes) / len(mapes), 2) if mapes else None
    prediction_accuracy = round(100 - sum(mapes) / len(mapes), 2) if mapes else None

    pairs = len(states)
    avg_confidence = (
        round(sum(CONFIDENCE_LEVEL_SCORES[level] * n for level, n in distribution.items()) / pairs, 2)
        if pairs
        else None
    )
    health = customer_health(states)

    return {
        "total_lifetime_orders": int(sum(b["order_count"] or 0 for b in buckets)),
        "active_customers": health["active"],
        "avg_weekly_revenue": trailing_weekly_revenue(buckets, now),
        "top_crops": top_crops(states),
        "prediction_accuracy": prediction_accuracy,
        "avg_mape": avg_mape,
        "avg_confidence": avg_confidence,
        "alert_count": alert_count,
        "customer_health": health,
        "confidence_distribution": distribution,
        "total_customer_crop_pairs": pairs,
        "total_daily_buckets": len(buckets),
        "total_monthly_summaries": monthly_summary_count,
        "last_computed_at": now,
    }
