"""
Advisory job lease.

The nightly recompute and the backfill both rewrite derived records, so they
share one lease row. Leases expire after ``job_lock_ttl_seconds`` so a crashed
worker cannot wedge the schedule forever.
"""

from __future__ import annotations

import os
import socket
from contextlib import asynccontextmanager
from datetime import datetime, timedelta

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from core.errors import JobLockedError
from db.models import JobLock
from db.repository import dialect_insert

logger = structlog.get_logger()

BATCH_JOB_LOCK = "learning_engine_batch"


def default_holder() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


async def acquire_job_lock(
    db: AsyncSession,
    name: str,
    holder: str,
    *,
    ttl_seconds: int,
    now: datetime,
) -> bool:
    """Take the lease if it is free or expired. Commits on success or failure."""
    await db.execute(delete(JobLock).where(JobLock.lock_name == name, JobLock.expires_at <= now))
    stmt = (
        dialect_insert(db, JobLock)
        .values(
            lock_name=name,
            holder=holder,
            acquired_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )
        .on_conflict_do_nothing(index_elements=["lock_name"])
    )
    result = await db.execute(stmt)
    await db.commit()
    return result.rowcount == 1


async def release_job_lock(db: AsyncSession, name: str, holder: str) -> None:
    await db.execute(delete(JobLock).where(JobLock.lock_name == name, JobLock.holder == holder))
    await db.commit()


async def current_holder(db: AsyncSession, name: str) -> str | None:
    result = await db.execute(select(JobLock.holder).where(JobLock.lock_name == name))
    return result.scalar_one_or_none()


@asynccontextmanager
async def job_lock(
    db: AsyncSession,
    name: str = BATCH_JOB_LOCK,
    *,
    holder: str | None = None,
    ttl_seconds: int | None = None,
    now: datetime | None = None,
):
    """
    Hold ``name`` for the duration of the block or raise JobLockedError.

    The block must commit its own work: anything left uncommitted when the
    block exits is rolled back before the lease is released.
    """
    holder = holder or default_holder()
    ttl_seconds = ttl_seconds or get_settings().job_lock_ttl_seconds
    now = now or datetime.utcnow()

    if not await acquire_job_lock(db, name, holder, ttl_seconds=ttl_seconds, now=now):
        other = await current_holder(db, name)
        logger.warning("job_lock.busy", lock=name, holder=other)
        raise JobLockedError(name, other)

    logger.info("job_lock.acquired", lock=name, holder=holder, ttl_seconds=ttl_seconds)
    try:
        yield holder
    finally:
        await db.rollback()
        await release_job_lock(db, name, holder)
        logger.info("job_lock.released", lock=name, holder=holder)
