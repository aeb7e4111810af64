"""
Tests for StatsRepository: versioned writes, atomic counters, alert dismissal.
"""

import uuid
from datetime import datetime

import pytest
from sqlalchemy import update

from analytics.rollups import BucketIncrement
from core.errors import ConcurrentUpdateError
from db.models import Alert, CustomerCropStat, DailyBucket
from db.repository import StatsRepository, chunked
from ml.pipeline import new_customer_crop_state
from ml.streaming_stats import apply_quantity

NOW = datetime(2026, 3, 1, 12)


def _create():
    return new_customer_crop_state("chef__pea", customer_key="chef", crop_key="pea")


def _add(quantity):
    def mutate(state):
        apply_quantity(state, quantity)
        return state.count

    return mutate


async def _bump_version(session_factory, stats_key):
    async with session_factory() as other:
        await other.execute(
            update(CustomerCropStat)
            .where(CustomerCropStat.stats_key == stats_key)
            .values(version=CustomerCropStat.version + 1)
        )
        await other.commit()


class TestChunked:
    def test_chunks(self):
        assert list(chunked([1, 2, 3, 4, 5], 2)) == [[1, 2], [3, 4], [5]]
        assert list(chunked([], 3)) == []


class TestVersionedWrites:
    async def test_create_then_update(self, test_db):
        repo = StatsRepository(test_db)
        state, count = await repo.modify_customer_crop_stat("chef__pea", create=_create, mutate=_add(4))
        assert count == 1
        state, count = await repo.modify_customer_crop_stat("chef__pea", create=_create, mutate=_add(6))
        await test_db.commit()

        assert count == 2
        row = await repo.get_customer_crop_stat("chef__pea")
        assert row.count == 2
        assert row.mean == pytest.approx(5.0)
        assert row.version == 2

    async def test_conflict_recomputes_from_fresh_row(self, test_db, session_factory, monkeypatch):
        seed = StatsRepository(test_db)
        await seed.modify_customer_crop_stat("chef__pea", create=_create, mutate=_add(10))
        await test_db.commit()

        repo = StatsRepository(test_db)
        original_fetch = repo._fetch_row
        calls = {"fetch": 0, "mutate": 0}

        async def racing_fetch(model, key_column, key):
            row = await original_fetch(model, key_column, key)
            calls["fetch"] += 1
            if calls["fetch"] == 1:
                await _bump_version(session_factory, key)
            return row

        def mutate(state):
            calls["mutate"] += 1
            apply_quantity(state, 20)
            return state.count

        monkeypatch.setattr(repo, "_fetch_row", racing_fetch)
        state, count = await repo.modify_customer_crop_stat("chef__pea", create=_create, mutate=mutate)
        await test_db.commit()

        assert calls == {"fetch": 2, "mutate": 2}
        assert count == 2
        row = await repo.get_customer_crop_stat("chef__pea")
        assert row.count == 2
        assert row.version == 3

    async def test_gives_up_after_max_retries(self, test_db, monkeypatch):
        repo = StatsRepository(test_db, max_retries=3)
        attempts = []

        async def always_stale(*args):
            return False

        def mutate(state):
            attempts.append(state.count)
            apply_quantity(state, 20)

        monkeypatch.setattr(repo, "_write_versioned", always_stale)
        with pytest.raises(ConcurrentUpdateError) as exc_info:
            await repo.modify_customer_crop_stat("chef__pea", create=_create, mutate=mutate)
        assert exc_info.value.attempts == 3
        assert exc_info.value.key == "chef__pea"
        assert attempts == [0, 0, 0]
        assert await repo.get_customer_crop_stat("chef__pea") is None

    async def test_nightly_write_invalidates_seen_version(self, test_db):
        repo = StatsRepository(test_db)
        state, _ = await repo.modify_customer_crop_stat("chef__pea", create=_create, mutate=_add(10))
        await test_db.commit()

        state.confidence = 42
        await repo.save_presentation(state, NOW)
        await test_db.commit()

        row = await repo.get_customer_crop_stat("chef__pea")
        await test_db.refresh(row)
        assert row.version == 2
        assert row.confidence == 42
        assert row.nightly_updated_at == NOW


class TestCounters:
    async def test_daily_bucket_increments(self, test_db):
        repo = StatsRepository(test_db)
        await repo.increment_daily_bucket(
            BucketIncrement("2026-02-20", "chef", 30.0, {"pea": (2.0, 20.0), "radish": (1.0, 10.0)})
        )
        await repo.increment_daily_bucket(BucketIncrement("2026-02-20", "chef", 15.0, {"pea": (1.5, 15.0)}))
        await repo.increment_daily_bucket(BucketIncrement("2026-02-20", "ana", 5.0, {"radish": (0.5, 5.0)}))
        await test_db.commit()

        bucket = await repo.get_daily_bucket("2026-02-20")
        assert bucket == {
            "bucket_date": "2026-02-20",
            "order_count": 3,
            "total_revenue": 50.0,
            "crop_quantities": {"pea": 3.5, "radish": 1.5},
            "crop_revenue": {"pea": 35.0, "radish": 15.0},
            "customer_orders": {"ana": 1, "chef": 2},
            "customer_revenue": {"ana": 5.0, "chef": 45.0},
        }
        assert await repo.get_daily_bucket("2026-02-21") is None

    async def test_record_processed_accumulates(self, test_db):
        repo = StatsRepository(test_db)
        await repo.record_processed(orders=1, at=datetime(2026, 2, 1))
        await repo.record_processed(orders=1, at=datetime(2026, 2, 2))
        await repo.record_processed(harvests=1)
        await test_db.commit()

        config = await repo.get_engine_config()
        await test_db.refresh(config)
        assert config.orders_processed == 2
        assert config.harvests_processed == 1
        assert config.last_processed_timestamp == datetime(2026, 2, 2)


class TestGenerationWrites:
    async def test_bulk_insert_in_chunks_and_wipe(self, test_db):
        repo = StatsRepository(test_db, batch_size=2)
        rows = [
            {"bucket_date": f"2026-01-0{n}", "order_count": n, "total_revenue": 10.0 * n} for n in range(1, 6)
        ]

        assert await repo.bulk_insert(DailyBucket, rows) == 5
        await test_db.commit()
        buckets, _, _ = await repo.daily_bucket_rows()
        assert [b["order_count"] for b in buckets] == [1, 2, 3, 4, 5]

        await repo.wipe_derived()
        await test_db.commit()
        buckets, crops, customers = await repo.daily_bucket_rows()
        assert (buckets, crops, customers) == ([], [], [])


class TestAlertDismissal:
    async def _alerts(self, repo, n):
        ids = []
        for i in range(n):
            alert = await repo.add_alert({"alert_type": "order_anomaly", "crop_key": f"crop{i}", "created_at": NOW})
            ids.append(alert.alert_id)
        return ids

    async def test_dismiss_counts_only_pending(self, test_db):
        repo = StatsRepository(test_db, batch_size=2)
        ids = await self._alerts(repo, 5)
        await test_db.commit()

        assert await repo.dismiss_alerts(ids[:3], NOW) == 3
        assert await repo.dismiss_alerts(ids + [uuid.uuid4()], NOW) == 2
        await test_db.commit()
        assert await repo.count_pending_alerts() == 0
        assert await repo.count_alerts_by() == [("order_anomaly", "dismissed", 5)]

    async def test_list_alerts_filters(self, test_db):
        repo = StatsRepository(test_db)
        await self._alerts(repo, 2)
        await repo.add_alert({"alert_type": "yield_outlier", "crop_key": "pea", "created_at": NOW})
        await test_db.commit()

        outliers = await repo.list_alerts(alert_type="yield_outlier")
        assert [a.crop_key for a in outliers] == ["pea"]
        assert isinstance(outliers[0], Alert)
        assert len(await repo.pending_alert_ids()) == 3
