"""
Learning Engine Router — event hooks and manual job triggers.

Upstream writers call the event hooks after persisting an order or harvest;
the nightly and backfill endpoints run the batch jobs inline (the scheduled
nightly run goes through Celery instead).
"""

from typing import Literal

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from alerts.engine import publish_alerts
from api.deps import get_db
from core.errors import FatalJobError, RecordNotFoundError, TransientStoreError
from workers.backfill import run_backfill
from workers.nightly import run_nightly_recompute
from workers.realtime import process_harvest_event, process_order_event

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/learning-engine", tags=["learning-engine"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class OrderEvent(BaseModel):
    order_id: str = Field(min_length=1)
    source_collection: Literal["shopify_orders", "orders"] = "shopify_orders"


class HarvestEvent(BaseModel):
    harvest_id: str = Field(min_length=1)


# ─── Helpers ────────────────────────────────────────────────────────────────


def _job_response(result: dict):
    if result.get("skipped"):
        return JSONResponse(status_code=409, content=result)
    return result


def _fatal(exc: FatalJobError) -> HTTPException:
    return HTTPException(
        status_code=500,
        detail={"success": False, "error": str(exc), "progress": exc.progress, "log": exc.log},
    )


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.post("/on-order-create")
async def on_order_create(
    body: OrderEvent,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
):
    """Apply one new order to the running statistics."""
    try:
        result = await process_order_event(db, body.order_id, body.source_collection)
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except TransientStoreError as exc:
        logger.warning("learning_engine.order_conflict", order_id=body.order_id, error=str(exc))
        raise HTTPException(status_code=503, detail=str(exc))

    if result.get("alerts"):
        background_tasks.add_task(publish_alerts, result["alerts"])
    return result


@router.post("/on-harvest-create")
async def on_harvest_create(
    body: HarvestEvent,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
):
    """Apply one new harvest to its crop's yield profile."""
    try:
        result = await process_harvest_event(db, body.harvest_id)
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except TransientStoreError as exc:
        logger.warning("learning_engine.harvest_conflict", harvest_id=body.harvest_id, error=str(exc))
        raise HTTPException(status_code=503, detail=str(exc))

    if result.get("outlier"):
        background_tasks.add_task(
            publish_alerts,
            [{"alert_id": result["alert_id"], "alert_type": "yield_outlier", "z_score": result["z_score"]}],
        )
    return result


@router.post("/nightly-stats")
async def nightly_stats(db: AsyncSession = Depends(get_db)):
    """Run the nightly recompute now."""
    try:
        return _job_response(await run_nightly_recompute(db))
    except FatalJobError as exc:
        raise _fatal(exc)


@router.post("/backfill")
async def backfill(db: AsyncSession = Depends(get_db)):
    """Rebuild every derived record from the order and harvest ledgers."""
    try:
        return _job_response(await run_backfill(db))
    except FatalJobError as exc:
        raise _fatal(exc)
