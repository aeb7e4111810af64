"""
Backfill Worker — rebuild every derived record from the upstream ledger.

Flow:
  1. Read both order sources (primary first), dedup, validate with skip counts
  2. Sort by (order_date, source rank, order_id) so EWMA and the regression
     see each pair's history in order
  3. Replay every qualifying line item through the same pipeline the
     real-time handler uses, plus every harvest through the yield tracker
  4. Compute presentation fields and the dashboard with the nightly code
  5. Replace the derived tables in ONE transaction (wipe + chunked inserts),
     so readers see either the old generation or the new one

Historical anomalies and yield outliers are counted, never alerted.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from analytics.dashboard import build_dashboard
from analytics.rollups import DailyBucketTotals, MonthlyTotals, order_bucket_increment
from core.config import Settings, get_settings
from core.errors import FatalJobError, JobLockedError, ValidationSkip
from db.locks import job_lock
from db.models import CustomerCropStat, DailyBucket, DailyBucketCrop, DailyBucketCustomer, MonthlySummary, YieldProfile
from db.repository import StatsRepository
from integrations.normalization import (
    ORDER_SOURCES,
    PRIMARY_SOURCE,
    SECONDARY_SOURCE,
    CanonicalHarvest,
    CanonicalOrder,
    build_stats_key,
    normalize_harvest,
    normalize_order,
    validate_order,
)
from ml.pipeline import new_customer_crop_state, process_line_item, refresh_presentation
from ml.streaming_stats import CustomerCropState
from ml.yield_profile import YieldState, apply_yield_observation
from workers.celery_app import celery_app, task_session
from workers.job_log import JobLog

logger = structlog.get_logger()

SOURCE_RANK = {source: rank for rank, source in enumerate(ORDER_SOURCES)}


@dataclass
class Replay:
    """Everything the in-memory replay produces, ready to be written."""

    states: dict[str, CustomerCropState] = field(default_factory=dict)
    profiles: dict[str, YieldState] = field(default_factory=dict)
    buckets: DailyBucketTotals = field(default_factory=DailyBucketTotals)
    months: MonthlyTotals = field(default_factory=MonthlyTotals)
    customers: set[str] = field(default_factory=set)
    revenue: float = 0.0
    line_items: int = 0
    anomalies: int = 0
    harvests: int = 0
    yield_outliers: int = 0


def collect_orders(primary_rows, secondary_rows) -> tuple[list[CanonicalOrder], Counter]:
    """
    Normalize, dedup and validate both ledgers.

    Every primary row's external id is remembered, valid or not; a secondary
    row is a duplicate only when its shopifyOrderId was seen there.
    """
    seen: set[str] = set()
    skip_reasons: Counter = Counter()
    orders: list[CanonicalOrder] = []

    for source, rows in ((PRIMARY_SOURCE, primary_rows), (SECONDARY_SOURCE, secondary_rows)):
        for row in rows:
            order = normalize_order(row.payload or {}, order_id=row.order_id, source=source)
            if source == PRIMARY_SOURCE:
                seen.add(order.external_id)
            elif order.external_id and order.external_id in seen:
                skip_reasons["duplicate"] += 1
                continue
            try:
                orders.append(validate_order(order))
            except ValidationSkip as skip:
                skip_reasons[skip.reason] += 1

    orders.sort(key=lambda o: (o.order_date, SOURCE_RANK[o.source], o.order_id))
    return orders, skip_reasons


def collect_harvests(rows, now: datetime) -> tuple[list[CanonicalHarvest], Counter]:
    skip_reasons: Counter = Counter()
    harvests = []
    for row in rows:
        try:
            harvests.append(normalize_harvest(row.payload or {}, harvest_id=row.harvest_id, default_date=now))
        except ValidationSkip as skip:
            skip_reasons[skip.reason] += 1
    harvests.sort(key=lambda h: (h.harvested_at, h.harvest_id))
    return harvests, skip_reasons


def replay_orders(orders: list[CanonicalOrder], replay: Replay) -> Replay:
    for order in orders:
        increment = order_bucket_increment(order)
        replay.buckets.add(increment)
        replay.months.add(increment)
        replay.customers.add(order.customer_key)
        replay.revenue += order.total

        for item in order.qualifying_items:
            stats_key = build_stats_key(order.customer_key, item.crop_key)
            state = replay.states.get(stats_key)
            if state is None:
                state = replay.states[stats_key] = new_customer_crop_state(
                    stats_key,
                    customer_key=order.customer_key,
                    crop_key=item.crop_key,
                    customer_name=order.customer_name,
                    crop_display_name=item.crop_display_name,
                )
            outcome = process_line_item(
                state,
                item.quantity,
                order.order_date,
                customer_name=order.customer_name,
                crop_display_name=item.crop_display_name,
            )
            replay.line_items += 1
            if outcome.anomaly.is_anomaly:
                replay.anomalies += 1
    return replay


def replay_harvests(harvests: list[CanonicalHarvest], replay: Replay) -> Replay:
    for harvest in harvests:
        profile = replay.profiles.get(harvest.crop_id)
        if profile is None:
            profile = replay.profiles[harvest.crop_id] = YieldState(crop_id=harvest.crop_id)
        outcome = apply_yield_observation(profile, harvest.yield_per_tray, harvest.harvested_at)
        replay.harvests += 1
        if outcome.outlier:
            replay.yield_outliers += 1
    return replay


async def _write_generation(
    repo: StatsRepository,
    replay: Replay,
    dashboard: dict,
    monthly: dict,
    engine_config: dict,
    now: datetime,
    log: JobLog,
) -> dict[str, int]:
    written: dict[str, int] = {}
    tables = (
        (
            CustomerCropStat,
            [
                {**s.to_values(), "version": 1, "updated_at": now, "nightly_updated_at": now}
                for _, s in sorted(replay.states.items())
            ],
        ),
        (DailyBucket, replay.buckets.bucket_rows()),
        (DailyBucketCrop, replay.buckets.crop_rows()),
        (DailyBucketCustomer, replay.buckets.customer_rows()),
        (MonthlySummary, [{**summary, "updated_at": now} for summary in monthly.values()]),
        (
            YieldProfile,
            [{**p.to_values(), "version": 1, "updated_at": now} for _, p in sorted(replay.profiles.items())],
        ),
    )

    try:
        await repo.wipe_derived()
        for model, rows in tables:
            written[model.__tablename__] = 0
            written[model.__tablename__] = await repo.bulk_insert(model, rows)
            log.add(f"Wrote {len(rows)} {model.__tablename__} rows.")
        await repo.save_dashboard(dashboard)
        await repo.save_engine_config(**engine_config)
        await repo.db.commit()
    except Exception as exc:
        await repo.db.rollback()
        logger.error("backfill.write_failed", error=str(exc), written=written)
        log.add(f"Write failed, rebuild rolled back: {exc}")
        raise FatalJobError(f"Backfill write failed: {exc}", log=log.lines, progress=written) from exc
    return written


async def run_backfill(
    db: AsyncSession,
    *,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> dict:
    settings = settings or get_settings()
    now = now or datetime.utcnow()
    log = JobLog("backfill")
    repo = StatsRepository(db, batch_size=settings.stats_batch_size)

    try:
        async with job_lock(db, ttl_seconds=settings.job_lock_ttl_seconds):
            log.add("Learning engine backfill starting.")

            try:
                primary = await repo.list_source_orders(PRIMARY_SOURCE)
                secondary = await repo.list_source_orders(SECONDARY_SOURCE)
                log.add(f"Found {len(primary)} {PRIMARY_SOURCE} and {len(secondary)} {SECONDARY_SOURCE} records.")

                orders, skip_reasons = collect_orders(primary, secondary)
                log.add(f"Total processable orders: {len(orders)} (skipped: {sum(skip_reasons.values())})")
                if skip_reasons:
                    log.add(f"Skip reasons: {dict(sorted(skip_reasons.items()))}")

                harvests, harvest_skips = collect_harvests(await repo.list_harvests(), now)
                if harvest_skips:
                    log.add(f"Harvest skip reasons: {dict(sorted(harvest_skips.items()))}")

                replay = replay_harvests(harvests, replay_orders(orders, Replay()))
                log.add(
                    f"Replayed {len(orders)} orders with {replay.line_items} line items "
                    f"and {replay.harvests} harvests.",
                    pairs=len(replay.states),
                    anomalies=replay.anomalies,
                    yield_outliers=replay.yield_outliers,
                )

                states = [s for _, s in sorted(replay.states.items())]
                for state in states:
                    refresh_presentation(state, now)
                monthly = replay.months.summaries()
                dashboard = build_dashboard(
                    states,
                    replay.buckets.bucket_rows(),
                    monthly_summary_count=len(monthly),
                    alert_count=await repo.count_pending_alerts(),
                    now=now,
                )
            except Exception as exc:
                await db.rollback()
                logger.error("backfill.failed", error=str(exc))
                log.add(f"Backfill aborted before writing: {exc}")
                raise FatalJobError(f"Backfill failed: {exc}", log=log.lines) from exc

            engine_config = {
                "last_backfill_at": now,
                "last_processed_timestamp": orders[-1].order_date if orders else None,
                "orders_processed": len(orders),
                "harvests_processed": replay.harvests,
                "version": 1,
            }
            await _write_generation(repo, replay, dashboard, monthly, engine_config, now, log)
    except JobLockedError as exc:
        log.add("Another batch job holds the lock; skipping.")
        return {**exc.as_response(), "log": log.lines}

    summary = {
        "success": True,
        "total_orders_processed": len(orders),
        "total_skipped": sum(skip_reasons.values()),
        "skip_reasons": dict(sorted(skip_reasons.items())),
        "unique_customer_crop_pairs": len(replay.states),
        "daily_buckets_created": len(replay.buckets),
        "monthly_summaries_created": len(monthly),
        "yield_profiles_created": len(replay.profiles),
        "total_unique_customers": len(replay.customers),
        "total_revenue": round(replay.revenue, 2),
        "anomalies_detected": replay.anomalies,
        "yield_outliers": replay.yield_outliers,
        "date_range": (
            {"from": orders[0].order_date.isoformat(), "to": orders[-1].order_date.isoformat()} if orders else None
        ),
        "duration": log.duration,
    }
    log.add(f"Backfill complete in {summary['duration']}s")
    logger.info("backfill.complete", **{k: v for k, v in summary.items() if k != "skip_reasons"})
    return {**summary, "log": log.lines}


@celery_app.task(
    name="workers.backfill.run_backfill",
    bind=True,
    max_retries=0,
    acks_late=True,
)
def run_backfill_task(self):
    """Full rebuild of every derived record. Manual trigger only."""
    run_id = self.request.id or "manual"
    logger.info("backfill.started", run_id=run_id)

    async def _run():
        async with task_session() as db:
            return await run_backfill(db)

    try:
        return asyncio.run(_run())
    except FatalJobError as exc:
        logger.error("backfill.task_failed", run_id=run_id, error=str(exc), progress=exc.progress)
        raise
