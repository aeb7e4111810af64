"""
Keyed record store for the learning engine.

Every write the engine performs goes through StatsRepository so handlers
never issue SQL themselves:

  - versioned read-modify-write (customer_crop_stats, yield_profiles):
    read the row, run a pure mutation, then
    ``UPDATE ... WHERE version = :seen`` (or ``INSERT ... ON CONFLICT DO
    NOTHING`` for a new key). A lost race re-reads and recomputes.
  - counters (daily buckets, engine_config):
    ``INSERT ... ON CONFLICT DO UPDATE SET col = col + excluded.col``
  - generation writes (backfill): wipe and chunked bulk insert inside the
    caller's transaction.

The repository never commits; the caller owns the transaction.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any, TypeVar

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from analytics.rollups import BucketIncrement
from core.config import get_settings
from core.errors import ConcurrentUpdateError
from db.models import (
    Alert,
    CustomerCropStat,
    Dashboard,
    DailyBucket,
    DailyBucketCrop,
    DailyBucketCustomer,
    EngineConfig,
    Harvest,
    MonthlySummary,
    SourceOrder,
    YieldProfile,
)
from ml.streaming_stats import CustomerCropState
from ml.yield_profile import YieldState

logger = structlog.get_logger()

T = TypeVar("T")

DERIVED_MODELS = (
    CustomerCropStat,
    DailyBucketCrop,
    DailyBucketCustomer,
    DailyBucket,
    MonthlySummary,
    YieldProfile,
    Dashboard,
)


def chunked(items: list, size: int) -> Iterable[list]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def dialect_insert(db: AsyncSession, model):
    """INSERT construct that supports ON CONFLICT for the bound dialect."""
    if db.get_bind().dialect.name == "postgresql":
        return postgresql.insert(model)
    return sqlite.insert(model)


class StatsRepository:
    def __init__(self, db: AsyncSession, *, max_retries: int | None = None, batch_size: int | None = None):
        settings = get_settings()
        self.db = db
        self.max_retries = max_retries or settings.stats_cas_max_retries
        self.batch_size = batch_size or settings.stats_batch_size

    # ── Dialect helpers ────────────────────────────────────────────────────

    def _insert(self, model):
        return dialect_insert(self.db, model)

    async def _upsert(self, model, values: dict[str, Any], key_columns: list[str]) -> None:
        stmt = self._insert(model).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=key_columns,
            set_={k: getattr(stmt.excluded, k) for k in values if k not in key_columns},
        )
        await self.db.execute(stmt)

    async def _increment(self, model, keys: dict[str, Any], deltas: dict[str, Any]) -> None:
        table = model.__table__
        stmt = self._insert(model).values(**keys, **deltas)
        stmt = stmt.on_conflict_do_update(
            index_elements=list(keys),
            set_={col: table.c[col] + getattr(stmt.excluded, col) for col in deltas},
        )
        await self.db.execute(stmt)

    # ── Upstream ledger ────────────────────────────────────────────────────

    async def get_source_order(self, source_collection: str, order_id: str) -> SourceOrder | None:
        return await self.db.get(SourceOrder, (source_collection, order_id))

    async def list_source_orders(self, source_collection: str) -> list[SourceOrder]:
        result = await self.db.execute(
            select(SourceOrder)
            .where(SourceOrder.source_collection == source_collection)
            .order_by(SourceOrder.order_id)
        )
        return list(result.scalars().all())

    async def get_harvest(self, harvest_id: str) -> Harvest | None:
        return await self.db.get(Harvest, harvest_id)

    async def list_harvests(self) -> list[Harvest]:
        result = await self.db.execute(select(Harvest).order_by(Harvest.harvest_id))
        return list(result.scalars().all())

    # ── Versioned read-modify-write ────────────────────────────────────────

    async def _fetch_row(self, model, key_column: str, key: str):
        table = model.__table__
        result = await self.db.execute(select(table).where(table.c[key_column] == key))
        return result.first()

    async def _write_versioned(
        self, model, key_column: str, key: str, values: dict[str, Any], seen_version: int | None
    ) -> bool:
        now = datetime.utcnow()
        if seen_version is None:
            stmt = (
                self._insert(model)
                .values(**values, version=1, updated_at=now)
                .on_conflict_do_nothing(index_elements=[key_column])
            )
        else:
            table = model.__table__
            stmt = (
                update(table)
                .where(table.c[key_column] == key, table.c.version == seen_version)
                .values(**values, version=seen_version + 1, updated_at=now)
            )
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    async def _modify_versioned(self, model, key_column, key, state_cls, create, mutate):
        for attempt in range(1, self.max_retries + 1):
            row = await self._fetch_row(model, key_column, key)
            if row is None:
                state, seen = create(), None
            else:
                state, seen = state_cls.from_record(row), row.version
            outcome = mutate(state)
            if await self._write_versioned(model, key_column, key, state.to_values(), seen):
                return state, outcome
            logger.info("repository.version_conflict", table=model.__tablename__, key=key, attempt=attempt)
        raise ConcurrentUpdateError(key, self.max_retries)

    async def modify_customer_crop_stat(
        self,
        stats_key: str,
        *,
        create: Callable[[], CustomerCropState],
        mutate: Callable[[CustomerCropState], T],
    ) -> tuple[CustomerCropState, T]:
        """
        Atomically apply ``mutate`` to one pair's record.

        ``mutate`` may run more than once (once per conflicting attempt), each
        time on a freshly loaded state, so it must not have side effects.
        """
        return await self._modify_versioned(
            CustomerCropStat, "stats_key", stats_key, CustomerCropState, create, mutate
        )

    async def modify_yield_profile(
        self,
        crop_id: str,
        *,
        create: Callable[[], YieldState],
        mutate: Callable[[YieldState], T],
    ) -> tuple[YieldState, T]:
        return await self._modify_versioned(YieldProfile, "crop_id", crop_id, YieldState, create, mutate)

    # ── Counters ───────────────────────────────────────────────────────────

    async def increment_daily_bucket(self, inc: BucketIncrement) -> None:
        await self._increment(
            DailyBucket,
            {"bucket_date": inc.bucket_date},
            {"order_count": 1, "total_revenue": inc.revenue},
        )
        await self._increment(
            DailyBucketCustomer,
            {"bucket_date": inc.bucket_date, "customer_key": inc.customer_key},
            {"order_count": 1, "revenue": inc.revenue},
        )
        for crop_key, (qty, revenue) in sorted(inc.crops.items()):
            await self._increment(
                DailyBucketCrop,
                {"bucket_date": inc.bucket_date, "crop_key": crop_key},
                {"quantity": qty, "revenue": revenue},
            )

    async def record_processed(self, *, orders: int = 0, harvests: int = 0, at: datetime | None = None) -> None:
        table = EngineConfig.__table__
        stmt = self._insert(EngineConfig).values(
            config_id="_config",
            orders_processed=orders,
            harvests_processed=harvests,
            last_processed_timestamp=at,
        )
        set_ = {
            "orders_processed": table.c.orders_processed + stmt.excluded.orders_processed,
            "harvests_processed": table.c.harvests_processed + stmt.excluded.harvests_processed,
        }
        if at is not None:
            set_["last_processed_timestamp"] = stmt.excluded.last_processed_timestamp
        await self.db.execute(stmt.on_conflict_do_update(index_elements=["config_id"], set_=set_))

    async def save_engine_config(self, **values: Any) -> None:
        await self._upsert(EngineConfig, {"config_id": "_config", **values}, ["config_id"])

    async def get_engine_config(self) -> EngineConfig | None:
        return await self.db.get(EngineConfig, "_config")

    # ── Nightly writes ─────────────────────────────────────────────────────

    async def save_presentation(self, state: CustomerCropState, now: datetime) -> None:
        # Bumps version so an in-flight real-time update re-reads instead of
        # writing back stale presentation fields.
        table = CustomerCropStat.__table__
        await self.db.execute(
            update(table)
            .where(table.c.stats_key == state.stats_key)
            .values(
                confidence=state.confidence,
                confidence_level=state.confidence_level,
                confidence_components=state.confidence_components,
                trend=state.trend,
                trend_slope=state.trend_slope,
                trend_weekly_change_pct=state.trend_weekly_change_pct,
                adjusted_ewma=state.adjusted_ewma,
                bias_corrected=state.bias_corrected,
                mape=state.mape,
                activity_flag=state.activity_flag,
                days_since_last_order=state.days_since_last_order,
                nightly_updated_at=now,
                version=table.c.version + 1,
            )
        )

    async def save_monthly_summary(self, summary: dict[str, Any], now: datetime) -> None:
        await self._upsert(MonthlySummary, {**summary, "updated_at": now}, ["month"])

    async def save_dashboard(self, values: dict[str, Any]) -> None:
        await self._upsert(Dashboard, {"dashboard_id": "dashboard", **values}, ["dashboard_id"])

    # ── Backfill generation writes ─────────────────────────────────────────

    async def wipe_derived(self) -> None:
        for model in DERIVED_MODELS:
            await self.db.execute(delete(model))

    async def bulk_insert(self, model, rows: list[dict[str, Any]]) -> int:
        """Insert ``rows`` in chunks of ``batch_size``, flushing between chunks."""
        for chunk in chunked(rows, self.batch_size):
            await self.db.execute(self._insert(model), chunk)
            await self.db.flush()
        return len(rows)

    # ── Readers ────────────────────────────────────────────────────────────

    async def list_customer_crop_states(self) -> list[CustomerCropState]:
        table = CustomerCropStat.__table__
        result = await self.db.execute(select(table).order_by(table.c.stats_key))
        return [CustomerCropState.from_record(row) for row in result.all()]

    async def list_customer_crop_stats(
        self, *, customer_key: str | None = None, crop_key: str | None = None, limit: int = 100, offset: int = 0
    ) -> list[CustomerCropStat]:
        query = select(CustomerCropStat)
        if customer_key:
            query = query.where(CustomerCropStat.customer_key == customer_key)
        if crop_key:
            query = query.where(CustomerCropStat.crop_key == crop_key)
        query = query.order_by(CustomerCropStat.stats_key).offset(offset).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_customer_crop_stat(self, stats_key: str) -> CustomerCropStat | None:
        return await self.db.get(CustomerCropStat, stats_key)

    async def list_yield_profiles(self) -> list[YieldProfile]:
        result = await self.db.execute(select(YieldProfile).order_by(YieldProfile.crop_id))
        return list(result.scalars().all())

    async def list_monthly_summaries(self) -> list[MonthlySummary]:
        result = await self.db.execute(select(MonthlySummary).order_by(MonthlySummary.month))
        return list(result.scalars().all())

    async def get_dashboard(self) -> Dashboard | None:
        return await self.db.get(Dashboard, "dashboard")

    async def daily_bucket_rows(self) -> tuple[list[dict], list[dict], list[dict]]:
        """All three bucket tables as plain dicts, ordered by date."""
        out = []
        for model in (DailyBucket, DailyBucketCrop, DailyBucketCustomer):
            table = model.__table__
            result = await self.db.execute(select(table).order_by(*table.primary_key.columns))
            out.append([dict(row._mapping) for row in result.all()])
        return out[0], out[1], out[2]

    async def get_daily_bucket(self, bucket_date: str) -> dict[str, Any] | None:
        bucket = await self.db.get(DailyBucket, bucket_date)
        if bucket is None:
            return None
        crops = (
            await self.db.execute(
                select(DailyBucketCrop)
                .where(DailyBucketCrop.bucket_date == bucket_date)
                .order_by(DailyBucketCrop.crop_key)
            )
        ).scalars().all()
        customers = (
            await self.db.execute(
                select(DailyBucketCustomer)
                .where(DailyBucketCustomer.bucket_date == bucket_date)
                .order_by(DailyBucketCustomer.customer_key)
            )
        ).scalars().all()
        return {
            "bucket_date": bucket.bucket_date,
            "order_count": bucket.order_count,
            "total_revenue": round(bucket.total_revenue, 2),
            "crop_quantities": {c.crop_key: c.quantity for c in crops},
            "crop_revenue": {c.crop_key: round(c.revenue, 2) for c in crops},
            "customer_orders": {c.customer_key: c.order_count for c in customers},
            "customer_revenue": {c.customer_key: round(c.revenue, 2) for c in customers},
        }

    # ── Alerts ─────────────────────────────────────────────────────────────

    async def add_alert(self, values: dict[str, Any]) -> Alert:
        alert = Alert(**values)
        self.db.add(alert)
        await self.db.flush()
        return alert

    async def list_alerts(
        self, *, status: str | None = None, alert_type: str | None = None, limit: int = 50
    ) -> list[Alert]:
        query = select(Alert)
        if status:
            query = query.where(Alert.status == status)
        if alert_type:
            query = query.where(Alert.alert_type == alert_type)
        query = query.order_by(Alert.created_at.desc()).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def count_alerts_by(self) -> list[tuple[str, str, int]]:
        result = await self.db.execute(
            select(Alert.alert_type, Alert.status, func.count()).group_by(Alert.alert_type, Alert.status)
        )
        return [(t, s, n) for t, s, n in result.all()]

    async def count_pending_alerts(self) -> int:
        result = await self.db.execute(select(func.count()).select_from(Alert).where(Alert.status == "pending"))
        return result.scalar_one()

    async def pending_alert_ids(self) -> list[uuid.UUID]:
        result = await self.db.execute(select(Alert.alert_id).where(Alert.status == "pending"))
        return list(result.scalars().all())

    async def dismiss_alerts(self, alert_ids: list[uuid.UUID], now: datetime) -> int:
        """Transition pending → dismissed in chunks; returns rows actually changed."""
        changed = 0
        for chunk in chunked(alert_ids, self.batch_size):
            result = await self.db.execute(
                update(Alert)
                .where(Alert.alert_id.in_(chunk), Alert.status == "pending")
                .values(status="dismissed", dismissed_at=now)
                .execution_options(synchronize_session=False)
            )
            changed += result.rowcount
        return changed
