"""
Alert Engine — learning-engine alerts and their lifecycle.

Alert Types:
  - order_anomaly: a line-item quantity outside the pair's expected range
  - yield_outlier: a harvest's yield-per-tray more than 3 stddev from the crop mean

Lifecycle: pending → dismissed (one way). New alerts are published on the
Redis channel ``alerts:{farm_id}`` by the Celery task wrappers after commit.
"""

import json
import uuid
from datetime import datetime
from typing import Any

import redis.asyncio as aioredis
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from db.models import Alert
from db.repository import StatsRepository
from integrations.normalization import CanonicalHarvest, CanonicalLineItem, CanonicalOrder
from ml.anomaly import AnomalyResult

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────────────────
# Alert Builders
# ──────────────────────────────────────────────────────────────────────────


def build_order_anomaly_alert(
    order: CanonicalOrder,
    item: CanonicalLineItem,
    anomaly: AnomalyResult,
    *,
    expected_mean: float,
) -> dict[str, Any]:
    expected_range = list(anomaly.expected_range) if anomaly.expected_range else None
    range_text = f" (expected {expected_range[0]:g}-{expected_range[1]:g})" if expected_range else ""
    return {
        "alert_type": "order_anomaly",
        "status": "pending",
        "order_id": order.order_id,
        "order_source": order.source,
        "customer_key": order.customer_key,
        "customer_name": order.customer_name,
        "crop_key": item.crop_key,
        "crop_display_name": item.crop_display_name or item.crop_key,
        "quantity": item.quantity,
        "expected_mean": round(expected_mean, 2),
        "z_score": anomaly.z_score,
        "expected_range": expected_range,
        "method": anomaly.method,
        "confidence": anomaly.confidence,
        "message": (
            f"{order.customer_name} ordered {item.quantity:g} of {item.crop_display_name}"
            f"{range_text}"
        ),
    }


def build_yield_outlier_alert(
    harvest: CanonicalHarvest,
    *,
    expected_mean: float,
    z_score: float,
) -> dict[str, Any]:
    yield_per_tray = round(harvest.yield_per_tray, 2)
    return {
        "alert_type": "yield_outlier",
        "status": "pending",
        "harvest_id": harvest.harvest_id,
        "crop_key": harvest.crop_id,
        "crop_display_name": harvest.crop_id,
        "quantity": yield_per_tray,
        "expected_mean": round(expected_mean, 2),
        "z_score": round(z_score, 2),
        "method": "zscore",
        "alert_metadata": {
            "yield_per_tray": yield_per_tray,
            "tray_count": harvest.tray_count,
            "total_yield_oz": harvest.total_yield_oz,
        },
        "message": "Yield outlier detected, profile NOT updated",
    }


# ──────────────────────────────────────────────────────────────────────────
# Alert Creation + Dismissal
# ──────────────────────────────────────────────────────────────────────────


async def create_alerts(db: AsyncSession, alerts: list[dict[str, Any]]) -> list[Alert]:
    """Persist alerts inside the caller's transaction and return the records."""
    repo = StatsRepository(db)
    created = []
    for alert_data in alerts:
        created.append(await repo.add_alert(alert_data))
    return created


async def dismiss_alerts(
    db: AsyncSession,
    *,
    alert_id: uuid.UUID | str | None = None,
    alert_ids: list[uuid.UUID | str] | None = None,
    dismiss_all: bool = False,
    now: datetime | None = None,
) -> int:
    """
    Move pending alerts to dismissed. Returns how many actually changed;
    already-dismissed and unknown ids are not counted.
    """
    repo = StatsRepository(db)
    if dismiss_all:
        ids = await repo.pending_alert_ids()
    elif alert_ids:
        ids = [uuid.UUID(str(a)) for a in alert_ids]
    elif alert_id:
        ids = [uuid.UUID(str(alert_id))]
    else:
        raise ValueError("Provide alert_id, alert_ids, or dismiss_all: true")

    dismissed = await repo.dismiss_alerts(ids, now or datetime.utcnow())
    await db.commit()
    logger.info("alerts.dismissed", requested=len(ids), dismissed=dismissed, dismiss_all=dismiss_all)
    return dismissed


async def alert_summary(db: AsyncSession) -> dict[str, Any]:
    repo = StatsRepository(db)
    by_type: dict[str, dict[str, int]] = {}
    totals = {"pending": 0, "dismissed": 0}
    for alert_type, status, n in await repo.count_alerts_by():
        by_type.setdefault(alert_type, {"pending": 0, "dismissed": 0})[status] = n
        totals[status] = totals.get(status, 0) + n
    return {"total": sum(totals.values()), "by_status": totals, "by_type": by_type}


# ──────────────────────────────────────────────────────────────────────────
# Publishing
# ──────────────────────────────────────────────────────────────────────────


async def publish_alerts(alerts: list[dict[str, Any]], farm_id: str | None = None) -> int:
    """
    Publish committed alerts to Redis pub/sub for live dashboards.
    Returns number of subscribers notified.
    """
    settings = get_settings()
    if not alerts or not settings.alert_pubsub_enabled:
        return 0

    channel = f"alerts:{farm_id or settings.farm_id}"
    redis = aioredis.from_url(settings.redis_url)
    try:
        total_subs = 0
        for payload in alerts:
            total_subs += await redis.publish(channel, json.dumps({"type": "alert", "payload": payload}))
        logger.info("alerts.published", channel=channel, count=len(alerts), subscribers=total_subs)
        return total_subs
    finally:
        await redis.aclose()
