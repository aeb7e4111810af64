"""
API Integration Tests — Alert listing, summary and dismissal.
"""

import uuid
from datetime import datetime, timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy import select

from db.models import Alert


@pytest.fixture
async def seeded_alerts(session_factory):
    """Three pending alerts and one already dismissed."""
    created = datetime(2026, 2, 20, 9)
    configs = [
        ("order_anomaly", "pending", "pea_shoots"),
        ("order_anomaly", "pending", "radish"),
        ("yield_outlier", "pending", "pea"),
        ("order_anomaly", "dismissed", "basil"),
    ]
    alerts = []
    async with session_factory() as db:
        for n, (alert_type, status, crop) in enumerate(configs):
            alert = Alert(
                alert_type=alert_type,
                status=status,
                crop_key=crop,
                message=f"Test {alert_type} alert",
                created_at=created + timedelta(minutes=n),
                alert_metadata={"yield_per_tray": 2.0} if alert_type == "yield_outlier" else None,
            )
            db.add(alert)
            alerts.append(alert)
        await db.commit()
    return alerts


async def _statuses(session_factory) -> dict[str, str]:
    async with session_factory() as db:
        rows = (await db.execute(select(Alert))).scalars().all()
        return {row.crop_key: row.status for row in rows}


@pytest.mark.asyncio
class TestAlertListing:
    async def test_list_newest_first(self, client: AsyncClient, seeded_alerts):
        resp = await client.get("/api/v1/alerts/")
        assert resp.status_code == 200
        data = resp.json()
        assert [a["crop_key"] for a in data] == ["basil", "pea", "radish", "pea_shoots"]

    async def test_filter_by_status_and_type(self, client: AsyncClient, seeded_alerts):
        resp = await client.get("/api/v1/alerts/?status=pending&alert_type=yield_outlier")
        assert resp.status_code == 200
        [alert] = resp.json()
        assert alert["crop_key"] == "pea"
        assert alert["alert_metadata"] == {"yield_per_tray": 2.0}

    async def test_limit_validation(self, client: AsyncClient):
        resp = await client.get("/api/v1/alerts/?limit=0")
        assert resp.status_code == 422

    async def test_summary(self, client: AsyncClient, seeded_alerts):
        resp = await client.get("/api/v1/alerts/summary")
        assert resp.status_code == 200
        assert resp.json() == {
            "total": 4,
            "by_status": {"pending": 3, "dismissed": 1},
            "by_type": {
                "order_anomaly": {"pending": 2, "dismissed": 1},
                "yield_outlier": {"pending": 1, "dismissed": 0},
            },
        }


@pytest.mark.asyncio
class TestAlertDismissal:
    async def test_dismiss_one(self, client: AsyncClient, session_factory, seeded_alerts):
        resp = await client.post("/api/v1/alerts/dismiss", json={"alert_id": str(seeded_alerts[0].alert_id)})
        assert resp.status_code == 200
        assert resp.json() == {"success": True, "dismissed": 1}
        assert (await _statuses(session_factory))["pea_shoots"] == "dismissed"

    async def test_dismiss_many_counts_only_pending(self, client: AsyncClient, seeded_alerts):
        ids = [str(a.alert_id) for a in seeded_alerts] + [str(uuid.uuid4())]
        resp = await client.post("/api/v1/alerts/dismiss", json={"alert_ids": ids})
        assert resp.status_code == 200
        assert resp.json()["dismissed"] == 3

    async def test_dismiss_all(self, client: AsyncClient, session_factory, seeded_alerts):
        resp = await client.post("/api/v1/alerts/dismiss", json={"dismiss_all": True})
        assert resp.json()["dismissed"] == 3
        assert set((await _statuses(session_factory)).values()) == {"dismissed"}

        again = await client.post("/api/v1/alerts/dismiss", json={"dismiss_all": True})
        assert again.json()["dismissed"] == 0

    async def test_dismiss_requires_a_selector(self, client: AsyncClient):
        resp = await client.post("/api/v1/alerts/dismiss", json={})
        assert resp.status_code == 400

    async def test_dismiss_rejects_malformed_id(self, client: AsyncClient):
        resp = await client.post("/api/v1/alerts/dismiss", json={"alert_id": "not-a-uuid"})
        assert resp.status_code == 422
