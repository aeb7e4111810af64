"""
Tests for the Alert Engine — alert builders, dismissal and publishing.
"""

import json
from datetime import datetime

import pytest

from alerts import engine as alert_engine
from alerts.engine import (
    build_order_anomaly_alert,
    build_yield_outlier_alert,
    create_alerts,
    dismiss_alerts,
    publish_alerts,
)
from core.config import get_settings
from integrations.normalization import normalize_harvest, normalize_order
from ml.anomaly import AnomalyResult

from conftest import order_payload


def _order():
    return normalize_order(
        order_payload("chef@bistro.com", datetime(2026, 2, 20), [("Pea Shoots", 60)]), order_id="o-9"
    )


class TestBuilders:
    def test_order_anomaly(self):
        order = _order()
        anomaly = AnomalyResult(
            is_anomaly=True, method="zscore", confidence="high", z_score=4.2, expected_range=(6.0, 14.0)
        )
        alert = build_order_anomaly_alert(order, order.items[0], anomaly, expected_mean=10.004)

        assert alert["alert_type"] == "order_anomaly"
        assert alert["status"] == "pending"
        assert alert["order_id"] == "o-9"
        assert alert["order_source"] == "shopify_orders"
        assert alert["expected_mean"] == 10.0
        assert alert["expected_range"] == [6.0, 14.0]
        assert alert["message"] == "Chef ordered 60 of Pea Shoots (expected 6-14)"

    def test_order_anomaly_without_range(self):
        order = _order()
        anomaly = AnomalyResult(is_anomaly=True, method="absolute_bounds", confidence="low")
        alert = build_order_anomaly_alert(order, order.items[0], anomaly, expected_mean=0)
        assert alert["expected_range"] is None
        assert alert["message"] == "Chef ordered 60 of Pea Shoots"

    def test_yield_outlier(self):
        harvest = normalize_harvest({"cropId": "pea", "totalYieldOz": 25, "trayCount": 12}, harvest_id="h-3")
        alert = build_yield_outlier_alert(harvest, expected_mean=8.0, z_score=-16.973)

        assert alert["alert_type"] == "yield_outlier"
        assert alert["z_score"] == -16.97
        assert alert["quantity"] == 2.08
        assert alert["alert_metadata"] == {"yield_per_tray": 2.08, "tray_count": 12.0, "total_yield_oz": 25.0}
        assert alert["message"] == "Yield outlier detected, profile NOT updated"


class TestDismiss:
    async def test_requires_selector(self, test_db):
        with pytest.raises(ValueError):
            await dismiss_alerts(test_db)

    async def test_malformed_id(self, test_db):
        with pytest.raises(ValueError):
            await dismiss_alerts(test_db, alert_id="not-a-uuid")

    async def test_dismiss_by_string_id(self, test_db):
        [alert] = await create_alerts(test_db, [{"alert_type": "order_anomaly", "crop_key": "pea"}])
        await test_db.commit()

        assert await dismiss_alerts(test_db, alert_id=str(alert.alert_id)) == 1
        await test_db.refresh(alert)
        assert alert.status == "dismissed"
        assert alert.dismissed_at is not None


class _FakeRedis:
    def __init__(self):
        self.messages = []
        self.closed = False

    async def publish(self, channel, message):
        self.messages.append((channel, json.loads(message)))
        return 2

    async def aclose(self):
        self.closed = True


class TestPublish:
    @pytest.fixture
    def fake_redis(self, monkeypatch):
        fake = _FakeRedis()
        monkeypatch.setattr(alert_engine.aioredis, "from_url", lambda url: fake)
        monkeypatch.setattr(get_settings(), "alert_pubsub_enabled", True)
        return fake

    async def test_publishes_on_farm_channel(self, fake_redis):
        sent = await publish_alerts([{"alert_id": "a1"}, {"alert_id": "a2"}], farm_id="farm-7")

        assert sent == 4
        assert fake_redis.messages == [
            ("alerts:farm-7", {"type": "alert", "payload": {"alert_id": "a1"}}),
            ("alerts:farm-7", {"type": "alert", "payload": {"alert_id": "a2"}}),
        ]
        assert fake_redis.closed

    async def test_nothing_to_publish(self, fake_redis):
        assert await publish_alerts([]) == 0
        assert fake_redis.messages == []

    async def test_disabled(self, monkeypatch):
        monkeypatch.setattr(get_settings(), "alert_pubsub_enabled", False)
        assert await publish_alerts([{"alert_id": "a1"}]) == 0
