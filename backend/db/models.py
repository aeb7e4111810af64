"""
CropCast Database Models

Keyed record store for the learning engine.

Tables:
  Upstream ledger (read-only to the learning engine):
  1. source_orders           - Raw order records from both legacy sources
  2. harvests                - Raw harvest records

  Derived statistics (rebuilt by backfill):
  3. customer_crop_stats     - Running stats per (customer, crop) pair
  4. daily_buckets           - Per-day order/revenue counters
  5. daily_bucket_crops      - Per-day, per-crop quantity/revenue counters
  6. daily_bucket_customers  - Per-day, per-customer order/revenue counters
  7. monthly_summaries       - Month rollups derived from daily buckets
  8. yield_profiles          - Running yield stats per crop
  9. dashboards              - Singleton dashboard snapshot
  10. engine_config          - Singleton processing bookkeeping

  Operational:
  11. alerts                 - Order anomalies and yield outliers
  12. job_locks              - Advisory lease between nightly and backfill
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID

from db.session import Base


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else value

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


# ─── 1. Source Orders ──────────────────────────────────────────────────────


class SourceOrder(Base):
    __tablename__ = "source_orders"

    source_collection = Column(String(50), primary_key=True)
    order_id = Column(String(255), primary_key=True)
    payload = Column(JSON, nullable=False, default=dict)
    received_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("source_collection IN ('shopify_orders', 'orders')", name="ck_source_collection"),
    )


# ─── 2. Harvests ───────────────────────────────────────────────────────────


class Harvest(Base):
    __tablename__ = "harvests"

    harvest_id = Column(String(255), primary_key=True)
    payload = Column(JSON, nullable=False, default=dict)
    received_at = Column(DateTime, nullable=False, default=datetime.utcnow)


# ─── 3. Customer-Crop Stats ────────────────────────────────────────────────


class CustomerCropStat(Base):
    __tablename__ = "customer_crop_stats"

    stats_key = Column(String(255), primary_key=True)
    customer_key = Column(String(255), nullable=False)
    crop_key = Column(String(255), nullable=False)
    customer_name = Column(String(255))
    crop_display_name = Column(String(255))

    # Welford
    count = Column(Integer, nullable=False, default=0)
    mean = Column(Float, nullable=False, default=0.0)
    m2 = Column(Float, nullable=False, default=0.0)

    # EWMA
    ewma = Column(Float)
    ewma_alpha = Column(Float, nullable=False, default=0.25)

    # Online regression (x = order sequence, y = quantity)
    sum_x = Column(Float, nullable=False, default=0.0)
    sum_y = Column(Float, nullable=False, default=0.0)
    sum_xy = Column(Float, nullable=False, default=0.0)
    sum_x2 = Column(Float, nullable=False, default=0.0)

    # Ordering pattern
    first_order_date = Column(DateTime)
    last_order_date = Column(DateTime)
    last_quantity = Column(Float, nullable=False, default=0.0)
    interval_count = Column(Integer, nullable=False, default=0)
    avg_days_between_orders = Column(Float)
    interval_m2 = Column(Float, nullable=False, default=0.0)
    interval_stddev = Column(Float)

    # Prediction accuracy feedback
    total_predictions = Column(Integer, nullable=False, default=0)
    sum_abs_percent_error = Column(Float, nullable=False, default=0.0)
    running_bias = Column(Float, nullable=False, default=0.0)

    # Presentation fields (nightly)
    confidence = Column(Integer)
    confidence_level = Column(String(20))
    confidence_components = Column(JSON)
    trend = Column(String(30))
    trend_slope = Column(Float)
    trend_weekly_change_pct = Column(Float)
    adjusted_ewma = Column(Float)
    bias_corrected = Column(Boolean, nullable=False, default=False)
    mape = Column(Float)
    activity_flag = Column(String(20))
    days_since_last_order = Column(Integer)

    version = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    nightly_updated_at = Column(DateTime)

    __table_args__ = (
        Index("ix_ccs_customer", "customer_key"),
        Index("ix_ccs_crop", "crop_key"),
        CheckConstraint("m2 >= 0", name="ck_ccs_m2_nonnegative"),
    )


# ─── 4-6. Daily Buckets ────────────────────────────────────────────────────


class DailyBucket(Base):
    __tablename__ = "daily_buckets"

    bucket_date = Column(String(10), primary_key=True)  # YYYY-MM-DD (UTC)
    order_count = Column(Integer, nullable=False, default=0)
    total_revenue = Column(Float, nullable=False, default=0.0)


class DailyBucketCrop(Base):
    __tablename__ = "daily_bucket_crops"

    bucket_date = Column(String(10), primary_key=True)
    crop_key = Column(String(255), primary_key=True)
    quantity = Column(Float, nullable=False, default=0.0)
    revenue = Column(Float, nullable=False, default=0.0)


class DailyBucketCustomer(Base):
    __tablename__ = "daily_bucket_customers"

    bucket_date = Column(String(10), primary_key=True)
    customer_key = Column(String(255), primary_key=True)
    order_count = Column(Integer, nullable=False, default=0)
    revenue = Column(Float, nullable=False, default=0.0)


# ─── 7. Monthly Summaries ──────────────────────────────────────────────────


class MonthlySummary(Base):
    __tablename__ = "monthly_summaries"

    month = Column(String(7), primary_key=True)  # YYYY-MM
    total_orders = Column(Integer, nullable=False, default=0)
    total_revenue = Column(Float, nullable=False, default=0.0)
    unique_customers = Column(Integer, nullable=False, default=0)
    crop_breakdown = Column(JSON, nullable=False, default=dict)
    top_customers = Column(JSON, nullable=False, default=list)
    avg_order_value = Column(Float, nullable=False, default=0.0)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)


# ─── 8. Yield Profiles ─────────────────────────────────────────────────────


class YieldProfile(Base):
    __tablename__ = "yield_profiles"

    crop_id = Column(String(255), primary_key=True)
    profile_yield_per_tray = Column(Float, nullable=False, default=0.0)
    actual_yield_estimate = Column(Float)
    yield_count = Column(Integer, nullable=False, default=0)
    yield_mean = Column(Float, nullable=False, default=0.0)
    yield_m2 = Column(Float, nullable=False, default=0.0)
    yield_stddev = Column(Float, nullable=False, default=0.0)
    adjusted_buffer_percent = Column(Float, nullable=False, default=15.0)
    last_harvest_date = Column(DateTime)
    version = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)


# ─── 9. Dashboard ──────────────────────────────────────────────────────────


class Dashboard(Base):
    __tablename__ = "dashboards"

    dashboard_id = Column(String(20), primary_key=True, default="dashboard")
    total_lifetime_orders = Column(Integer, nullable=False, default=0)
    active_customers = Column(Integer, nullable=False, default=0)
    avg_weekly_revenue = Column(Float, nullable=False, default=0.0)
    top_crops = Column(JSON, nullable=False, default=list)
    prediction_accuracy = Column(Float)
    avg_mape = Column(Float)
    avg_confidence = Column(Float)
    alert_count = Column(Integer, nullable=False, default=0)
    customer_health = Column(JSON, nullable=False, default=dict)
    confidence_distribution = Column(JSON, nullable=False, default=dict)
    total_customer_crop_pairs = Column(Integer, nullable=False, default=0)
    total_daily_buckets = Column(Integer, nullable=False, default=0)
    total_monthly_summaries = Column(Integer, nullable=False, default=0)
    last_computed_at = Column(DateTime, nullable=False, default=datetime.utcnow)


# ─── 10. Engine Config ─────────────────────────────────────────────────────


class EngineConfig(Base):
    __tablename__ = "engine_config"

    config_id = Column(String(20), primary_key=True, default="_config")
    last_backfill_at = Column(DateTime)
    last_processed_timestamp = Column(DateTime)
    orders_processed = Column(Integer, nullable=False, default=0)
    harvests_processed = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1)
    last_nightly_run = Column(DateTime)
    nightly_duration_seconds = Column(Integer)


# ─── 11. Alerts ────────────────────────────────────────────────────────────


class Alert(Base):
    __tablename__ = "alerts"

    alert_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    alert_type = Column(String(30), nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    order_id = Column(String(255))
    order_source = Column(String(50))
    harvest_id = Column(String(255))
    customer_key = Column(String(255))
    customer_name = Column(String(255))
    crop_key = Column(String(255))
    crop_display_name = Column(String(255))
    quantity = Column(Float)
    expected_mean = Column(Float)
    z_score = Column(Float)
    expected_range = Column(JSON)
    method = Column(String(30))
    confidence = Column(String(20))
    alert_metadata = Column("metadata", JSON, default=dict)
    message = Column(Text)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    dismissed_at = Column(DateTime)

    __table_args__ = (
        Index("ix_alerts_status", "status"),
        Index("ix_alerts_type_status", "alert_type", "status"),
        CheckConstraint("alert_type IN ('order_anomaly', 'yield_outlier')", name="ck_alert_type"),
        CheckConstraint("status IN ('pending', 'dismissed')", name="ck_alert_status"),
    )


# ─── 12. Job Locks ─────────────────────────────────────────────────────────


class JobLock(Base):
    __tablename__ = "job_locks"

    lock_name = Column(String(100), primary_key=True)
    holder = Column(String(255), nullable=False)
    acquired_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    expires_at = Column(DateTime, nullable=False)
