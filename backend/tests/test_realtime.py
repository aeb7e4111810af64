"""
Tests for the real-time order/harvest handlers and their Celery wrappers.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from core.errors import ConcurrentUpdateError, RecordNotFoundError
from db.models import Alert, Harvest, SourceOrder, YieldProfile
from db.repository import StatsRepository
from db.session import Base
from workers import realtime
from workers.realtime import on_order_created, process_harvest_event, process_order_event

from conftest import NOW, order_payload

START = datetime(2026, 1, 5, 15)


class TestOrderEvent:
    async def test_first_order_creates_pair_and_bucket(self, test_db, ledger):
        await ledger.add_order("o-1", order_payload("chef@bistro.com", START, [("Pea Shoots", 2), ("Radish", 1)]))

        result = await process_order_event(test_db, "o-1", now=NOW)

        assert result == {"success": True, "line_items_processed": 2, "anomalies_detected": 0, "alerts": []}
        repo = StatsRepository(test_db)
        stat = await repo.get_customer_crop_stat("chef_bistro_com__pea_shoots")
        assert stat.count == 1
        assert stat.ewma == 2.0
        assert stat.customer_name == "Chef"
        assert stat.crop_display_name == "Pea Shoots"
        assert stat.first_order_date == START

        bucket = await repo.get_daily_bucket("2026-01-05")
        assert bucket["order_count"] == 1
        assert bucket["total_revenue"] == 30.0
        assert bucket["crop_quantities"] == {"pea_shoots": 2.0, "radish": 1.0}

        config = await repo.get_engine_config()
        assert config.orders_processed == 1
        assert config.last_processed_timestamp == START

    async def test_weekly_history_builds_cadence(self, test_db, ledger):
        ids = await ledger.add_weekly_orders("chef@bistro.com", "Pea Shoots", [10, 12, 11, 10, 13], start=START)
        for order_id in ids:
            await process_order_event(test_db, order_id, now=NOW)

        stat = await StatsRepository(test_db).get_customer_crop_stat("chef_bistro_com__pea_shoots")
        assert stat.count == 5
        assert stat.mean == pytest.approx(11.2)
        assert stat.avg_days_between_orders == pytest.approx(7.0)
        assert stat.interval_count == 4
        assert stat.total_predictions == 4
        assert stat.last_order_date == START + timedelta(days=28)
        assert stat.version == 5

    async def test_absolute_bound_anomaly_raises_alert(self, test_db, ledger):
        ids = await ledger.add_weekly_orders("chef@bistro.com", "Pea Shoots", [10, 10, 10, 10, 51], start=START)
        results = [await process_order_event(test_db, order_id, now=NOW) for order_id in ids]

        assert [r["anomalies_detected"] for r in results] == [0, 0, 0, 0, 1]
        [alert_ref] = results[-1]["alerts"]
        assert alert_ref["crop_key"] == "pea_shoots"
        assert alert_ref["quantity"] == 51
        assert alert_ref["z_score"] is None

        alert = (await test_db.execute(select(Alert))).scalar_one()
        assert str(alert.alert_id) == alert_ref["alert_id"]
        assert alert.status == "pending"
        assert alert.method == "absolute_bounds"
        assert alert.expected_mean == 10.0
        assert alert.expected_range == [1.0, 50.0]
        assert alert.order_id == ids[-1]

    async def test_boundary_quantity_is_not_anomalous(self, test_db, ledger):
        ids = await ledger.add_weekly_orders("chef@bistro.com", "Pea Shoots", [10, 10, 10, 10, 50], start=START)
        results = [await process_order_event(test_db, order_id, now=NOW) for order_id in ids]
        assert results[-1]["anomalies_detected"] == 0

    async def test_missing_created_at_is_dated_now(self, test_db, ledger):
        await ledger.add_order("o-1", order_payload("chef@bistro.com", None, [("Pea Shoots", 2)]))
        await process_order_event(test_db, "o-1", now=NOW)
        assert await StatsRepository(test_db).get_daily_bucket("2026-03-01") is not None

    async def test_epoch_milliseconds_created_at(self, test_db, ledger):
        await ledger.add_order(
            "o-1", order_payload("chef@bistro.com", None, [("Pea Shoots", 2)], createdAt=1767625200000)
        )
        result = await process_order_event(test_db, "o-1", now=NOW)
        assert result["line_items_processed"] == 1
        assert await StatsRepository(test_db).get_daily_bucket("2026-01-05") is not None

    async def test_out_of_range_created_at_is_dated_now(self, test_db, ledger):
        await ledger.add_order("o-1", order_payload("chef@bistro.com", None, [("Pea Shoots", 2)], createdAt=10**20))
        await process_order_event(test_db, "o-1", now=NOW)
        assert await StatsRepository(test_db).get_daily_bucket("2026-03-01") is not None

    async def test_secondary_source(self, test_db, ledger):
        await ledger.add_order(
            "5012",
            {"customerId": "cust-9", "createdAt": {"_seconds": 1767625200}, "lineItems": [{"name": "Basil", "quantity": "3"}]},
            source="orders",
        )
        result = await process_order_event(test_db, "5012", "orders", now=NOW)
        assert result["line_items_processed"] == 1
        assert await StatsRepository(test_db).get_customer_crop_stat("cust-9__basil") is not None

    @pytest.mark.parametrize(
        "payload, reason",
        [
            (order_payload("chef@bistro.com", START, [("Pea Shoots", 2)], status="cancelled"), "cancelled"),
            (order_payload("chef@bistro.com", START, []), "no_line_items"),
            ({"createdAt": "2026-01-05T00:00:00Z", "items": [{"title": "Pea", "quantity": 1}]}, "unknown_customer"),
        ],
    )
    async def test_business_rule_skips(self, test_db, ledger, payload, reason):
        await ledger.add_order("o-1", payload)
        result = await process_order_event(test_db, "o-1", now=NOW)

        assert result == {"skipped": True, "reason": reason}
        assert await StatsRepository(test_db).get_engine_config() is None

    async def test_unknown_order(self, test_db):
        with pytest.raises(RecordNotFoundError):
            await process_order_event(test_db, "missing", now=NOW)

    async def test_failure_rolls_back_every_write(self, test_db, ledger, monkeypatch):
        await ledger.add_order("o-1", order_payload("chef@bistro.com", START, [("Pea Shoots", 2)]))

        async def broken_bucket(self, inc):
            raise ConcurrentUpdateError("2026-01-05", 1)

        monkeypatch.setattr(StatsRepository, "increment_daily_bucket", broken_bucket)
        with pytest.raises(ConcurrentUpdateError):
            await process_order_event(test_db, "o-1", now=NOW)

        repo = StatsRepository(test_db)
        assert await repo.get_customer_crop_stat("chef_bistro_com__pea_shoots") is None


class TestHarvestEvent:
    async def _harvest(self, ledger, harvest_id, oz, trays=12, day=1):
        payload = {"cropId": "pea", "totalYieldOz": oz, "trayCount": trays, "harvestedAt": f"2026-02-{day:02d}T09:00:00Z"}
        return await ledger.add_harvest(harvest_id, payload)

    async def test_normal_harvest(self, test_db, ledger):
        await self._harvest(ledger, "h1", 96)
        result = await process_harvest_event(test_db, "h1", now=NOW)

        assert result == {"success": True, "outlier": False, "yield_per_tray": 8.0, "ewma": 8.0, "buffer": 15}
        config = await StatsRepository(test_db).get_engine_config()
        assert config.harvests_processed == 1

    async def test_outlier_rejected_and_alerted(self, test_db, ledger):
        for n, oz in enumerate([90, 96, 102, 96, 96]):
            await self._harvest(ledger, f"h{n}", oz, day=n + 1)
            await process_harvest_event(test_db, f"h{n}", now=NOW)

        await self._harvest(ledger, "h-dropped", 24, day=9)
        result = await process_harvest_event(test_db, "h-dropped", now=NOW)

        assert result["outlier"] is True
        assert result["z_score"] < -3
        assert result["message"] == "Yield outlier detected, profile NOT updated"

        profile = (await test_db.execute(select(YieldProfile))).scalar_one()
        assert profile.yield_count == 5
        assert profile.last_harvest_date == datetime(2026, 2, 5, 9)

        alert = (await test_db.execute(select(Alert))).scalar_one()
        assert alert.alert_type == "yield_outlier"
        assert alert.alert_metadata == {"yield_per_tray": 2.0, "tray_count": 12.0, "total_yield_oz": 24.0}

    @pytest.mark.parametrize(
        "payload, reason",
        [({"totalYieldOz": 96, "trayCount": 12}, "missing_cropId"), ({"cropId": "pea", "trayCount": 12}, "missing_yield_data")],
    )
    async def test_skips(self, test_db, ledger, payload, reason):
        await ledger.add_harvest("h1", payload)
        assert await process_harvest_event(test_db, "h1", now=NOW) == {"skipped": True, "reason": reason}

    async def test_unknown_harvest(self, test_db):
        with pytest.raises(RecordNotFoundError):
            await process_harvest_event(test_db, "missing", now=NOW)


class TestOrderTask:
    def test_task_processes_and_publishes_after_commit(self, tmp_path, monkeypatch):
        db_url = f"sqlite+aiosqlite:///{tmp_path / 'task.db'}"

        async def _seed():
            engine = create_async_engine(db_url)
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            async with session_factory() as db:
                for n, qty in enumerate([10, 10, 10, 10, 80]):
                    payload = order_payload("chef@bistro.com", START + timedelta(days=7 * n), [("Pea Shoots", qty)])
                    db.add(SourceOrder(source_collection="shopify_orders", order_id=f"o-{n}", payload=payload))
                db.add(Harvest(harvest_id="h1", payload={"cropId": "pea", "totalYieldOz": 96, "trayCount": 12}))
                await db.commit()
            await engine.dispose()

        asyncio.run(_seed())
        monkeypatch.setattr("workers.celery_app.get_settings", lambda: SimpleNamespace(database_url=db_url))

        published = []

        async def _capture(alerts, farm_id=None):
            published.append(alerts)
            return 0

        monkeypatch.setattr(realtime, "publish_alerts", _capture)

        results = [on_order_created.run(f"o-{n}") for n in range(5)]

        assert results[-1]["anomalies_detected"] == 1
        assert published == [results[-1]["alerts"]]

    def test_transient_failure_is_retried(self, monkeypatch):
        attempts = []

        async def _conflict(db, order_id, source_collection):
            attempts.append(order_id)
            raise ConcurrentUpdateError("chef__pea", 5)

        @asynccontextmanager
        async def _no_session():
            yield None

        monkeypatch.setattr(realtime, "process_order_event", _conflict)
        monkeypatch.setattr(realtime, "task_session", _no_session)

        # Called directly (outside a worker) Celery re-raises instead of scheduling.
        with pytest.raises(ConcurrentUpdateError):
            on_order_created.run("o-1")
        assert attempts == ["o-1"]
