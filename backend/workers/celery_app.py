"""
Celery Application Configuration
"""

from contextlib import asynccontextmanager

from celery import Celery
from celery.schedules import crontab
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "cropcast",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["workers.realtime", "workers.nightly", "workers.backfill"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.nightly_timezone,
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "workers.realtime.*": {"queue": "events"},
        "workers.nightly.*": {"queue": "batch"},
        "workers.backfill.*": {"queue": "batch"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    beat_schedule={
        "learning-engine-nightly-stats": {
            "task": "workers.nightly.run_nightly_stats",
            "schedule": crontab(hour=settings.nightly_schedule_hour, minute=0),
            "options": {"queue": "batch"},
        },
    },
)


@asynccontextmanager
async def task_session():
    """Fresh engine + session per task run; asyncio.run() gives each task its own loop."""
    engine = create_async_engine(get_settings().database_url)
    try:
        async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        async with async_session() as db:
            yield db
    finally:
        await engine.dispose()
