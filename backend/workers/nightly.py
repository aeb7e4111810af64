"""
Nightly Recompute Worker — presentation fields, monthly summaries, dashboard.

Steps:
  1. Refresh every customer-crop record's presentation fields (confidence,
     trend, MAPE, bias correction, activity flag) in chunks
  2. Rebuild monthly summaries from the daily buckets
  3. Count pending alerts
  4. Write the dashboard snapshot and engine bookkeeping

A pure function of the stored sums and ``now``: two runs with the same
``now`` and no intervening events leave identical presentation fields.
"""

from __future__ import annotations

import asyncio
import copy
from datetime import datetime

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from analytics.dashboard import build_dashboard
from analytics.rollups import monthly_summaries_from_buckets
from core.config import Settings, get_settings
from core.errors import FatalJobError, JobLockedError
from db.locks import job_lock
from db.repository import StatsRepository, chunked
from ml.pipeline import refresh_presentation
from workers.celery_app import celery_app, task_session
from workers.job_log import JobLog

logger = structlog.get_logger()


async def _refresh_customer_crop_stats(
    repo: StatsRepository, states: list, now: datetime, log: JobLog, settings: Settings
) -> dict:
    """Refresh and persist presentation fields chunk by chunk; return the states as stored."""
    updated = 0
    failed = 0
    errors: list[str] = []
    persisted: list = []

    for index, chunk in enumerate(chunked(states, settings.stats_batch_size)):
        refreshed = [refresh_presentation(copy.deepcopy(state), now) for state in chunk]
        try:
            for state in refreshed:
                await repo.save_presentation(state, now)
            await repo.db.commit()
            updated += len(chunk)
            persisted.extend(refreshed)
        except Exception as exc:
            await repo.db.rollback()
            failed += len(chunk)
            # rolled back: the dashboard sees what is still stored
            persisted.extend(chunk)
            if len(errors) < settings.error_detail_limit:
                errors.append(f"chunk {index}: {exc}")
            logger.error("nightly.chunk_failed", chunk=index, size=len(chunk), error=str(exc))

    log.add(f"Updated {updated} customer-crop records ({failed} failed).", updated=updated, failed=failed)
    return {"updated": updated, "failed": failed, "errors": errors, "states": persisted}


async def run_nightly_recompute(
    db: AsyncSession,
    *,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> dict:
    settings = settings or get_settings()
    now = now or datetime.utcnow()
    log = JobLog("nightly")
    repo = StatsRepository(db, batch_size=settings.stats_batch_size)

    try:
        async with job_lock(db, ttl_seconds=settings.job_lock_ttl_seconds):
            log.add("Nightly stats job starting.")
            progress: dict = {}

            try:
                states = await repo.list_customer_crop_states()
                log.add(f"Found {len(states)} customer-crop records.")
                refreshed = await _refresh_customer_crop_stats(repo, states, now, log, settings)
                progress["customer_crop_stats"] = refreshed["updated"]

                buckets, crop_rows, customer_rows = await repo.daily_bucket_rows()
                log.add(f"Found {len(buckets)} daily buckets.")
                summaries = monthly_summaries_from_buckets(buckets, crop_rows, customer_rows)
                for summary in summaries.values():
                    await repo.save_monthly_summary(summary, now)
                log.add(f"Updated {len(summaries)} monthly summaries.")

                alert_count = await repo.count_pending_alerts()
                dashboard = build_dashboard(
                    refreshed["states"],
                    buckets,
                    monthly_summary_count=len(summaries),
                    alert_count=alert_count,
                    now=now,
                )
                await repo.save_dashboard(dashboard)
                log.add("Wrote dashboard.")

                await repo.save_engine_config(last_nightly_run=now, nightly_duration_seconds=log.duration)
                await db.commit()
            except Exception as exc:
                await db.rollback()
                logger.error("nightly.failed", error=str(exc), progress=progress)
                log.add(f"Nightly stats aborted: {exc}")
                raise FatalJobError(f"Nightly stats failed: {exc}", log=log.lines, progress=progress) from exc
    except JobLockedError as exc:
        log.add("Another batch job holds the lock; skipping.")
        return {**exc.as_response(), "log": log.lines}

    health = dashboard["customer_health"]
    log.add(f"Nightly stats complete in {log.duration}s")
    logger.info(
        "nightly.complete",
        updated=refreshed["updated"],
        failed=refreshed["failed"],
        monthly_summaries=len(summaries),
        duration=log.duration,
    )
    return {
        "success": True,
        "updated_documents": refreshed["updated"],
        "failed_documents": refreshed["failed"],
        "errors": refreshed["errors"],
        "monthly_summaries": len(summaries),
        "active_customers": health["active"],
        "at_risk": health["at_risk"],
        "churned": health["churned"],
        "alert_count": alert_count,
        "duration": log.duration,
        "log": log.lines,
    }


@celery_app.task(
    name="workers.nightly.run_nightly_stats",
    bind=True,
    max_retries=1,
    default_retry_delay=300,
    acks_late=True,
)
def run_nightly_stats(self):
    """
    Recompute presentation fields, monthly summaries and the dashboard.
    Scheduled via Celery Beat (daily at nightly_schedule_hour, farm timezone).
    """
    run_id = self.request.id or "manual"
    logger.info("nightly.started", run_id=run_id)

    async def _run():
        async with task_session() as db:
            return await run_nightly_recompute(db)

    try:
        return asyncio.run(_run())
    except FatalJobError as exc:
        logger.error("nightly.task_failed", run_id=run_id, error=str(exc), log=exc.log)
        raise
