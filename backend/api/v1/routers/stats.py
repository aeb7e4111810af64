"""
Stats Router — read-only views over the learning engine's derived records.
"""

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, field_serializer
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_db
from db.models import CustomerCropStat
from db.repository import StatsRepository
from ml.feedback_loop import classify_accuracy
from ml.streaming_stats import sample_stddev

router = APIRouter(prefix="/api/v1/stats", tags=["stats"])


def _round2(value: float | None) -> float | None:
    return round(value, 2) if value is not None else None


# ─── Schemas ────────────────────────────────────────────────────────────────


class CustomerCropStatResponse(BaseModel):
    stats_key: str
    customer_key: str
    crop_key: str
    customer_name: str | None
    crop_display_name: str | None
    count: int
    mean: float
    stddev: float | None = None
    ewma: float | None
    ewma_alpha: float
    adjusted_ewma: float | None
    bias_corrected: bool
    running_bias: float
    total_predictions: int
    mape: float | None
    accuracy: str | None = None
    confidence: int | None
    confidence_level: str | None
    confidence_components: dict[str, int] | None
    trend: str | None
    trend_slope: float | None
    trend_weekly_change_pct: float | None
    first_order_date: datetime | None
    last_order_date: datetime | None
    last_quantity: float
    interval_count: int
    avg_days_between_orders: float | None
    interval_stddev: float | None
    activity_flag: str | None
    days_since_last_order: int | None
    updated_at: datetime
    nightly_updated_at: datetime | None

    model_config = {"from_attributes": True}

    @field_serializer(
        "mean", "stddev", "ewma", "adjusted_ewma", "running_bias", "avg_days_between_orders", "interval_stddev"
    )
    def _round(self, value: float | None) -> float | None:
        return _round2(value)


class YieldProfileResponse(BaseModel):
    crop_id: str
    profile_yield_per_tray: float
    actual_yield_estimate: float | None
    yield_count: int
    yield_mean: float
    yield_stddev: float
    adjusted_buffer_percent: float
    last_harvest_date: datetime | None
    updated_at: datetime

    model_config = {"from_attributes": True}

    @field_serializer("actual_yield_estimate", "yield_mean", "yield_stddev")
    def _round(self, value: float | None) -> float | None:
        return _round2(value)


class MonthlySummaryResponse(BaseModel):
    month: str
    total_orders: int
    total_revenue: float
    unique_customers: int
    crop_breakdown: dict[str, dict[str, float]]
    top_customers: list[dict]
    avg_order_value: float
    updated_at: datetime

    model_config = {"from_attributes": True}


class DashboardResponse(BaseModel):
    total_lifetime_orders: int
    active_customers: int
    avg_weekly_revenue: float
    top_crops: list[dict]
    prediction_accuracy: float | None
    avg_mape: float | None
    avg_confidence: float | None
    alert_count: int
    customer_health: dict[str, int]
    confidence_distribution: dict[str, int]
    total_customer_crop_pairs: int
    total_daily_buckets: int
    total_monthly_summaries: int
    last_computed_at: datetime

    model_config = {"from_attributes": True}


class DailyBucketResponse(BaseModel):
    bucket_date: str
    order_count: int
    total_revenue: float
    crop_quantities: dict[str, float]
    crop_revenue: dict[str, float]
    customer_orders: dict[str, int]
    customer_revenue: dict[str, float]


def _stat_response(row: CustomerCropStat) -> CustomerCropStatResponse:
    response = CustomerCropStatResponse.model_validate(row)
    response.stddev = sample_stddev(row.count, row.m2)
    response.accuracy = classify_accuracy(row.mape)
    return response


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/dashboard", response_model=DashboardResponse)
async def get_dashboard(db: AsyncSession = Depends(get_db)):
    dashboard = await StatsRepository(db).get_dashboard()
    if dashboard is None:
        raise HTTPException(status_code=404, detail="Dashboard not computed yet")
    return dashboard


@router.get("/customer-crops", response_model=list[CustomerCropStatResponse])
async def list_customer_crops(
    customer_key: str | None = None,
    crop_key: str | None = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    """List customer-crop statistics, optionally for one customer or crop."""
    rows = await StatsRepository(db).list_customer_crop_stats(
        customer_key=customer_key, crop_key=crop_key, limit=limit, offset=skip
    )
    return [_stat_response(row) for row in rows]


@router.get("/customer-crops/{stats_key}", response_model=CustomerCropStatResponse)
async def get_customer_crop(stats_key: str, db: AsyncSession = Depends(get_db)):
    row = await StatsRepository(db).get_customer_crop_stat(stats_key)
    if row is None:
        raise HTTPException(status_code=404, detail="Customer-crop stats not found")
    return _stat_response(row)


@router.get("/yield-profiles", response_model=list[YieldProfileResponse])
async def list_yield_profiles(db: AsyncSession = Depends(get_db)):
    return await StatsRepository(db).list_yield_profiles()


@router.get("/monthly-summaries", response_model=list[MonthlySummaryResponse])
async def list_monthly_summaries(db: AsyncSession = Depends(get_db)):
    return await StatsRepository(db).list_monthly_summaries()


@router.get("/daily-buckets/{bucket_date}", response_model=DailyBucketResponse)
async def get_daily_bucket(bucket_date: str, db: AsyncSession = Depends(get_db)):
    """One day's counters; ``bucket_date`` is YYYY-MM-DD (UTC)."""
    bucket = await StatsRepository(db).get_daily_bucket(bucket_date)
    if bucket is None:
        raise HTTPException(status_code=404, detail=f"No orders on {bucket_date}")
    return bucket
