"""
Test Configuration — Fixtures for async DB, test client, and ledger seeding.

Each test gets its own SQLite file database so the job lock, the versioned
writes and the backfill's single-transaction rebuild all run against a real
second connection when a test needs one.
"""

import os

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ALERT_PUBSUB_ENABLED", "false")

from datetime import datetime, timedelta

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import db.models  # noqa: F401  (registers tables)
from api.deps import get_db
from api.main import app
from db.models import Harvest, SourceOrder
from db.session import Base

NOW = datetime(2026, 3, 1, 12, 0, 0)


@pytest.fixture
async def test_engine(tmp_path):
    """Fresh file-backed SQLite database with every table created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'cropcast.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def test_db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def client(session_factory):
    """Create an async test client bound to the per-test database."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


def order_payload(
    customer: str,
    created_at: datetime | None,
    items: list[tuple[str, float]],
    *,
    total: float | None = None,
    price: float = 10.0,
    **extra,
) -> dict:
    """Primary-source shaped order: ``items`` is a list of (title, quantity)."""
    payload = {
        "customerEmail": customer,
        "customerName": customer.split("@")[0].title(),
        "items": [{"title": title, "quantity": qty, "price": price} for title, qty in items],
        "total": total if total is not None else sum(qty * price for _, qty in items),
        "status": "delivered",
        **extra,
    }
    if created_at is not None:
        payload["createdAt"] = created_at.isoformat() + "Z"
    return payload


class Ledger:
    """Writes upstream order/harvest records the way the sync jobs would."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    async def add_order(self, order_id: str, payload: dict, source: str = "shopify_orders") -> str:
        async with self._session_factory() as session:
            session.add(SourceOrder(source_collection=source, order_id=order_id, payload=payload))
            await session.commit()
        return order_id

    async def add_harvest(self, harvest_id: str, payload: dict) -> str:
        async with self._session_factory() as session:
            session.add(Harvest(harvest_id=harvest_id, payload=payload))
            await session.commit()
        return harvest_id

    async def add_weekly_orders(
        self,
        customer: str,
        crop: str,
        quantities: list[float],
        *,
        start: datetime,
        every_days: float = 7,
        prefix: str = "o",
    ) -> list[str]:
        ids = []
        for n, qty in enumerate(quantities):
            order_id = f"{prefix}-{n:03d}"
            created = start + timedelta(days=every_days * n)
            ids.append(await self.add_order(order_id, order_payload(customer, created, [(crop, qty)])))
        return ids


@pytest.fixture
def ledger(session_factory):
    return Ledger(session_factory)
