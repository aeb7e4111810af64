"""
Real-Time Event Workers — one upstream record in, incremental stats out.

Workers:
  1. on_order_created: order → per-line-item stats, anomaly alerts, daily bucket
  2. on_harvest_created: harvest → yield profile or yield_outlier alert

Each line item is applied inside one versioned read-modify-write on its
customer-crop record, so concurrent events for the same pair never lose an
update. Validation skips are answers, not errors.
"""

from __future__ import annotations

import asyncio
from datetime import datetime

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from alerts.engine import build_order_anomaly_alert, build_yield_outlier_alert, create_alerts, publish_alerts
from analytics.rollups import order_bucket_increment
from core.errors import RecordNotFoundError, TransientStoreError, ValidationSkip
from db.repository import StatsRepository
from integrations.normalization import PRIMARY_SOURCE, build_stats_key, normalize_harvest, normalize_order, validate_order
from ml.pipeline import new_customer_crop_state, process_line_item
from ml.yield_profile import YieldState, apply_yield_observation
from workers.celery_app import celery_app, task_session

logger = structlog.get_logger()


async def process_order_event(
    db: AsyncSession,
    order_id: str,
    source_collection: str = PRIMARY_SOURCE,
    *,
    now: datetime | None = None,
) -> dict:
    now = now or datetime.utcnow()
    repo = StatsRepository(db)

    record = await repo.get_source_order(source_collection, order_id)
    if record is None:
        raise RecordNotFoundError(f"Order {order_id} not found in {source_collection}")

    # Real-time orders without a usable createdAt are dated "now".
    order = normalize_order(record.payload, order_id=order_id, source=source_collection, default_date=now)
    try:
        validate_order(order)
    except ValidationSkip as skip:
        logger.info("realtime.order_skipped", order_id=order_id, source=source_collection, reason=skip.reason)
        return skip.as_response()

    results = {"line_items_processed": 0, "anomalies_detected": 0, "alerts": []}
    try:
        for item in order.qualifying_items:
            stats_key = build_stats_key(order.customer_key, item.crop_key)

            def create(item=item, stats_key=stats_key):
                return new_customer_crop_state(
                    stats_key,
                    customer_key=order.customer_key,
                    crop_key=item.crop_key,
                    customer_name=order.customer_name,
                    crop_display_name=item.crop_display_name,
                )

            def mutate(state, item=item):
                return process_line_item(
                    state,
                    item.quantity,
                    order.order_date,
                    customer_name=order.customer_name,
                    crop_display_name=item.crop_display_name,
                )

            _, outcome = await repo.modify_customer_crop_stat(stats_key, create=create, mutate=mutate)
            results["line_items_processed"] += 1

            if outcome.anomaly.is_anomaly:
                [alert] = await create_alerts(
                    db, [build_order_anomaly_alert(order, item, outcome.anomaly, expected_mean=outcome.prior_mean)]
                )
                results["anomalies_detected"] += 1
                results["alerts"].append(
                    {
                        "alert_id": str(alert.alert_id),
                        "crop_key": item.crop_key,
                        "quantity": item.quantity,
                        "z_score": outcome.anomaly.z_score,
                    }
                )

        await repo.increment_daily_bucket(order_bucket_increment(order))
        await repo.record_processed(orders=1, at=order.order_date)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "realtime.order_processed",
        order_id=order_id,
        source=source_collection,
        line_items=results["line_items_processed"],
        anomalies=results["anomalies_detected"],
    )
    return {"success": True, **results}


async def process_harvest_event(db: AsyncSession, harvest_id: str, *, now: datetime | None = None) -> dict:
    now = now or datetime.utcnow()
    repo = StatsRepository(db)

    record = await repo.get_harvest(harvest_id)
    if record is None:
        raise RecordNotFoundError(f"Harvest {harvest_id} not found")

    try:
        harvest = normalize_harvest(record.payload, harvest_id=harvest_id, default_date=now)
    except ValidationSkip as skip:
        logger.info("realtime.harvest_skipped", harvest_id=harvest_id, reason=skip.reason)
        return skip.as_response()

    try:
        profile, outcome = await repo.modify_yield_profile(
            harvest.crop_id,
            create=lambda: YieldState(crop_id=harvest.crop_id),
            mutate=lambda state: apply_yield_observation(state, harvest.yield_per_tray, harvest.harvested_at),
        )

        if outcome.outlier:
            [alert] = await create_alerts(
                db,
                [build_yield_outlier_alert(harvest, expected_mean=profile.yield_mean, z_score=outcome.z_score)],
            )
            response = {
                "success": True,
                "outlier": True,
                "z_score": outcome.z_score,
                "message": alert.message,
                "alert_id": str(alert.alert_id),
            }
        else:
            response = {
                "success": True,
                "outlier": False,
                "yield_per_tray": round(outcome.yield_per_tray, 2),
                "ewma": round(profile.actual_yield_estimate, 2),
                "buffer": profile.adjusted_buffer_percent,
            }

        await repo.record_processed(harvests=1)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("realtime.harvest_processed", harvest_id=harvest_id, crop_id=harvest.crop_id, outlier=outcome.outlier)
    return response


# ──────────────────────────────────────────────────────────────────────────
# Celery tasks
# ──────────────────────────────────────────────────────────────────────────


@celery_app.task(
    name="workers.realtime.on_order_created",
    bind=True,
    max_retries=3,
    default_retry_delay=5,
    acks_late=True,
)
def on_order_created(self, order_id: str, source_collection: str = PRIMARY_SOURCE):
    """Process one new order; retried only when the store reports a transient failure."""
    run_id = self.request.id or "manual"
    logger.info("realtime.order.started", order_id=order_id, source=source_collection, run_id=run_id)

    async def _run():
        async with task_session() as db:
            result = await process_order_event(db, order_id, source_collection)
        if result.get("alerts"):
            await publish_alerts(result["alerts"])
        return result

    try:
        return asyncio.run(_run())
    except TransientStoreError as exc:
        logger.warning("realtime.order.retry", order_id=order_id, error=str(exc))
        raise self.retry(exc=exc)
    except Exception as exc:
        logger.error("realtime.order.failed", order_id=order_id, error=str(exc))
        raise


@celery_app.task(
    name="workers.realtime.on_harvest_created",
    bind=True,
    max_retries=3,
    default_retry_delay=5,
    acks_late=True,
)
def on_harvest_created(self, harvest_id: str):
    run_id = self.request.id or "manual"
    logger.info("realtime.harvest.started", harvest_id=harvest_id, run_id=run_id)

    async def _run():
        async with task_session() as db:
            result = await process_harvest_event(db, harvest_id)
        if result.get("outlier"):
            await publish_alerts(
                [{"alert_id": result["alert_id"], "alert_type": "yield_outlier", "z_score": result["z_score"]}]
            )
        return result

    try:
        return asyncio.run(_run())
    except TransientStoreError as exc:
        logger.warning("realtime.harvest.retry", harvest_id=harvest_id, error=str(exc))
        raise self.retry(exc=exc)
    except Exception as exc:
        logger.error("realtime.harvest.failed", harvest_id=harvest_id, error=str(exc))
        raise
